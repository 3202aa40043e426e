"""
api/limiter.py -- Shared slowapi limiter for per-route brute-force limits.

The gate's own token buckets (auth/ratelimit.py) throttle overall request
volume per IP and per identity. This limiter sits on top of that for routes
that need a much tighter, fixed-window limit -- today only POST /auth/login.

Import this in both api/main.py (to mount as middleware) and the route
modules (to apply @limiter.limit()). A single shared instance means all
routes share one in-memory counter store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
