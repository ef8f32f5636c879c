"""HTML page rendering for the pairing/bootstrap screen."""

from __future__ import annotations

from html import escape
from textwrap import dedent

from .config import Settings
from .services.sessions import AuthenticatedUser, PendingPairing, Session


PAGE_TEMPLATE = dedent(
    """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <meta http-equiv="refresh" content="__REFRESH__" />
    <title>__APP_NAME__</title>
    <style>
        :root {
            color-scheme: dark;
            font-family: 'Inter', 'Segoe UI', system-ui, -apple-system, sans-serif;
            --surface: #141414;
            --text-primary: #f5f5f5;
            --text-muted: #a6a6a6;
            --outline: #1c1c1c;
            background: #000000;
            color: var(--text-primary);
        }
        body {
            margin: 0;
            min-height: 100vh;
            background: #000000;
        }
        a {
            color: inherit;
        }
        main {
            max-width: 640px;
            margin: 0 auto;
            padding: 3rem 1.5rem 4rem;
            text-align: center;
        }
        .card {
            background: var(--surface);
            border: 1px solid var(--outline);
            border-radius: 20px;
            padding: 1.75rem;
        }
        .value {
            font-size: 2.5rem;
            font-weight: 700;
            letter-spacing: 0.1em;
            margin: 0.5rem 0 1.5rem;
        }
        p.description {
            color: var(--text-muted);
        }
    </style>
</head>
<body>
    <main>
        <h1>__APP_NAME__</h1>
        <section class="card">
__BODY__
        </section>
    </main>
</body>
</html>
"""
)


def render_session_page(settings: Settings, session: Session) -> str:
    """Return the bootstrap page: the pairing code, or the HereSphere login."""

    state = session.state
    if isinstance(state, PendingPairing):
        body = (
            '            <p class="description">Open Quick Connect in a signed-in '
            "Jellyfin client and enter this code.</p>\n"
            f'            <h2>Code</h2><div class="value">{escape(state.code)}</div>\n'
            '            <p class="description">This page refreshes on its own.</p>'
        )
    elif isinstance(state, AuthenticatedUser):
        body = (
            '            <p class="description">Sign in to this server from '
            "HereSphere with:</p>\n"
            f'            <h2>User</h2><div class="value">{escape(state.username)}</div>\n'
            f'            <h2>Pass</h2><div class="value">{escape(state.password)}</div>\n'
            '            <p><a href="/heresphere">Open in HereSphere</a></p>'
        )
    else:
        raise TypeError(f"Unknown session state {state!r}")

    replacements = {
        "__APP_NAME__": escape(settings.app_name),
        "__REFRESH__": "5",
        "__BODY__": body,
    }
    html = PAGE_TEMPLATE
    for placeholder, value in replacements.items():
        html = html.replace(placeholder, value)
    return html
