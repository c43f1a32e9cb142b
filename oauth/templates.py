"""HTML templates for the OAuth callback.

The page is rendered with str.format(); every value must be HTML-escaped by the
caller. No inline scripts: the callback page is served under a CSP that only
allows inline styles.
"""

# ============== Callback Templates ==============

AUTHORIZATION_CODE_PAGE = """
<!DOCTYPE html>
<html>
<head>
    <title>Authorization Successful - Zendesk MCP</title>
    <meta name="robots" content="noindex, nofollow">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
               background: #F8F9F9;
               min-height: 100vh; display: flex; align-items: center; justify-content: center; margin: 0; }}
        .container {{ background: white; padding: 40px; border-radius: 16px; box-shadow: 0 4px 24px rgba(0,0,0,0.08);
                     width: 100%; max-width: 560px; border: 1px solid #E5E4E0; }}
        h1 {{ margin: 0 0 8px; color: #03363D; font-size: 24px; font-weight: 600; }}
        p {{ color: #68737D; margin: 0 0 16px; }}
        .code {{ background: #F8F9F9; border: 1px solid #D8DCDE; border-radius: 8px; padding: 14px;
                font-family: monospace; font-size: 14px; word-break: break-all; user-select: all; }}
        .warning {{ background: #FFF7ED; color: #9A3412; padding: 12px; border-radius: 8px; margin-top: 20px;
                   border: 1px solid #FED7AA; font-size: 14px; }}
        dl {{ margin: 20px 0 0; font-size: 14px; color: #2F3941; }}
        dt {{ font-weight: 600; margin-top: 8px; }}
        dd {{ margin: 4px 0 0; font-family: monospace; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Authorization Successful</h1>
        <p>Copy this authorization code into your MCP client. It can be used once and expires in {expires_minutes} minutes.</p>
        <div class="code">{code}</div>
        <dl>
            <dt>Token endpoint</dt>
            <dd>{token_endpoint}</dd>
            <dt>Scope</dt>
            <dd>{scope}</dd>
        </dl>
        <div class="warning">Do not share this code. Close this window once your client has exchanged it.</div>
    </div>
</body>
</html>
"""
