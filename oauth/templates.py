"""HTML templates for the Duo OAuth callback pages."""

AUTH_SUCCESS_PAGE = """
<!DOCTYPE html>
<html>
<head>
    <title>Authentication Successful</title>
    <style>
        body {{ font-family: Arial, sans-serif; padding: 40px; text-align: center; background: #f5f5f5; }}
        .container {{ background: white; border-radius: 8px; padding: 40px; max-width: 500px;
                     margin: 0 auto; box-shadow: 0 2px 10px rgba(0,0,0,0.1); }}
        .success {{ color: #28a745; font-size: 48px; margin: 20px 0; }}
        .title {{ font-size: 24px; font-weight: bold; margin: 20px 0; }}
        .info {{ color: #666; margin: 20px 0; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="success">&#10003;</div>
        <div class="title">Authentication Successful!</div>
        <div class="info">You can now close this window and return to your terminal.</div>
    </div>
</body>
</html>
"""

AUTH_FAILURE_PAGE = """
<!DOCTYPE html>
<html>
<head><title>Authentication Failed</title></head>
<body style="font-family: Arial, sans-serif; padding: 40px; text-align: center;">
    <h1 style="color: #dc3545;">Authentication Failed</h1>
    <p>{message}</p>
</body>
</html>
"""
