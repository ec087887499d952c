"""Shared rate limiter instance for use across route files."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from medstock.core.config import settings

# Read endpoints use READ_LIMIT, state-changing endpoints WRITE_LIMIT
READ_LIMIT = "60/minute"
WRITE_LIMIT = "30/minute"

limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
