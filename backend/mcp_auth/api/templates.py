"""HTML templates for the browser-facing login flow.

Palette:
- Background: #FAF9F7
- Primary: #D97756
- Text: #1A1915
- Secondary text: #6B6860
"""

LOGIN_PAGE = """
<!DOCTYPE html>
<html>
<head>
    <title>Sign In - MCP Auth Gateway</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
               background: #FAF9F7;
               min-height: 100vh; display: flex; align-items: center; justify-content: center; margin: 0; }}
        .container {{ background: white; padding: 40px; border-radius: 16px; box-shadow: 0 4px 24px rgba(0,0,0,0.08);
                     width: 100%; max-width: 400px; border: 1px solid #E5E4E0; }}
        h1 {{ margin: 0 0 8px; color: #1A1915; font-size: 24px; font-weight: 600; }}
        p {{ color: #6B6860; margin: 0 0 24px; }}
        .provider {{ display: block; width: 100%; padding: 14px; margin-bottom: 12px; background: #D97756;
                    color: white; border-radius: 8px; font-size: 15px; font-weight: 600; text-align: center;
                    text-decoration: none; box-sizing: border-box; transition: all 0.2s; }}
        .provider:hover {{ background: #C4684A; }}
        .info {{ background: #F5F5F0; color: #6B6860; padding: 12px; border-radius: 8px; font-size: 14px; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Sign In</h1>
        <p>Choose an identity provider to authorize MCP client access</p>
        {providers}
    </div>
</body>
</html>
"""

PROVIDER_LINK = '<a class="provider" href="{href}">Continue with {name}</a>'

NO_PROVIDERS = '<div class="info">No identity providers are configured.</div>'
