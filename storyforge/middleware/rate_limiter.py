"""
Rate limiting configuration.

The Limiter instance is created in storyforge/__init__.py with no default
limits; this module applies limits per blueprint and per route.

Usage:
    from storyforge.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

GENERATE_LIMIT = "10/minute"
DEFAULT_LIMIT = "60/minute"


def init_rate_limits(app, limiter):
    """
    Limits (per remote IP):
        - Generate endpoint: 10/minute (model calls are expensive)
        - Other run endpoints: 60/minute
        - Health check: exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    view = app.view_functions.get("runs.generate")
    if view:
        app.view_functions["runs.generate"] = limiter.limit(GENERATE_LIMIT)(view)

    bp = app.blueprints.get("runs")
    if bp:
        limiter.limit(DEFAULT_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: generate=%s, runs=%s", GENERATE_LIMIT, DEFAULT_LIMIT)
