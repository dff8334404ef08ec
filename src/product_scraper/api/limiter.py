"""Shared slowapi rate-limiter singleton.

Keeping the ``Limiter`` instance in its own module breaks the circular
import that would arise if route modules imported directly from ``main.py``
(which itself imports every route module).

Usage in route modules::

    from product_scraper.api.limiter import limiter, init_rate_limit

    @router.post("/init")
    @limiter.limit(init_rate_limit)
    async def init_job(request: Request, ...):
        ...

The ``request`` parameter **must** be present in the route function
signature for slowapi to resolve the rate-limit key.

``main.create_app()`` attaches the limiter to ``app.state``, registers
``SlowAPIMiddleware`` and switches it off when ``RATE_LIMIT_ENABLED`` is
false.
"""

from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

from product_scraper.config.settings import get_settings

limiter: Limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["300/minute"],
)
"""Global rate-limiter instance.

Default limit: 300 requests/minute per IP address, generous enough for the
dashboard's status polling.  ``POST /api/scrape/init`` is limited further by
:func:`init_rate_limit`.
"""


def init_rate_limit() -> str:
    """Limit string for job creation, read from settings at request time."""
    return get_settings().init_rate_limit
