"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted as middleware) and by the route modules that
apply per-route limits with @limiter.limit() (sign-in and sign-up).

One shared instance means one in-memory counter store; separate instances
per module would each count on their own and the limits would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
