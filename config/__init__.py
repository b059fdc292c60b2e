"""
Configuration module for the discharge follow-up scheduling system
"""

from .redis import create_redis_connection, test_redis_connection
from .settings import Settings, get_settings

__all__ = [
    'create_redis_connection',
    'test_redis_connection',
    'Settings',
    'get_settings',
]
