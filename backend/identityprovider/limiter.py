"""Shared slowapi rate limiter instance.

Separated from the router so the application factory can register it
without importing endpoint modules twice.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
