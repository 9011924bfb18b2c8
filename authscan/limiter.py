"""
AuthScan Orchestrator - Rate Limiting
Shared slowapi limiter; registered on app.state by create_app().
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

from authscan.config import SECURITY_CONFIG

limiter = Limiter(
    key_func=get_remote_address,
    enabled=SECURITY_CONFIG.get('rate_limit_enabled', True),
)
