"""
Rate limiting configuration.

The Limiter instance is created in changeflow/__init__.py with no default
limits; this module applies per-blueprint limits, keyed by the
authenticated caller when there is one.

Usage:
    from changeflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

from flask import g, request as flask_request

_WRITE_BLUEPRINTS = ("approval_bp", "proposed_change_bp", "approver_change_bp")
_READ_BLUEPRINTS = ("template_bp",)


def caller_key():
    """Rate limit key: the caller's directory id if authenticated, else remote IP."""
    user_id = getattr(g, "jwt_user_id", None)
    if user_id:
        return f"auth:{user_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per caller):
        - Engine endpoints:   RATELIMIT_MUTATIONS (default 60/minute)
        - Template endpoints: 200/minute
        - Health check:       exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    write_limit = app.config.get("RATELIMIT_MUTATIONS", "60 per minute")
    for bp_name in _WRITE_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(write_limit, key_func=caller_key)(bp)

    for bp_name in _READ_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit("200/minute", key_func=caller_key)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — engine: %s, templates: 200/min", write_limit)
