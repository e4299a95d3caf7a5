"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in apqp/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from apqp.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

GENERATION_LIMIT = "10/minute"
WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Generation / review:  10/minute  (each request fans out LLM calls)
        - Audit reports:        10/minute
        - Master data writes:   60/minute
        - Read endpoints:       200/minute
        - Health check:         exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name in ("generation", "traceability", "review", "reports"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(GENERATION_LIMIT)(bp)

    bp = app.blueprints.get("products")
    if bp:
        limiter.limit(WRITE_LIMIT)(bp)

    for bp_name in ("documents", "consistency"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — generation: %s, write: %s, read: %s",
        GENERATION_LIMIT, WRITE_LIMIT, READ_LIMIT,
    )
