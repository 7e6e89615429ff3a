from flask_talisman import Talisman

def init_security(app):
    """
    Production/staging security headers. The surface is JSON plus the
    processor's hosted card elements, so the CSP stays tight.
    """
    csp = {
        "default-src": ["'self'"],
        "script-src":  ["'self'", "https://js.stripe.com"],
        "connect-src": ["'self'", "https://api.stripe.com"],
        "frame-src":   ["https://js.stripe.com", "https://hooks.stripe.com"],
        "img-src":     ["'self'", "data:"],
        "frame-ancestors": ["'none'"],
        "base-uri":    ["'self'"],
        "form-action": ["'self'"],
    }

    Talisman(
        app,
        content_security_policy=csp,
        force_https=True,
        strict_transport_security=True,
        session_cookie_secure=True,
        frame_options="DENY",
        referrer_policy="no-referrer",
    )
