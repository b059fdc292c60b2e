"""
Redis configuration for the discharge follow-up scheduling system
"""
import logging
import os

import redis

logger = logging.getLogger("redis-config")


def get_redis_config() -> dict:
    """Get Redis configuration from environment variables"""
    return {
        'host': os.getenv('REDIS_HOST', 'localhost'),
        'port': int(os.getenv('REDIS_PORT', '6379')),
        'db': int(os.getenv('REDIS_DB', '0')),
        'password': os.getenv('REDIS_PASSWORD'),
        'socket_timeout': int(os.getenv('REDIS_SOCKET_TIMEOUT', '5')),
        'socket_connect_timeout': int(os.getenv('REDIS_CONNECT_TIMEOUT', '5')),
        'decode_responses': True
    }


def create_redis_connection(decode_responses: bool = True) -> redis.Redis:
    """
    Create a Redis connection with proper configuration

    Args:
        decode_responses: rq stores pickled job payloads and needs raw bytes,
            so the queue connection is created with this set to False
    """
    config = get_redis_config()
    config['decode_responses'] = decode_responses

    # Remove None values
    config = {k: v for k, v in config.items() if v is not None}

    return redis.Redis(**config)


def test_redis_connection() -> bool:
    """Test Redis connection and return True if successful"""
    try:
        r = create_redis_connection()
        r.ping()
        return True
    except redis.RedisError as e:
        logger.error(f"Redis connection failed: {e}")
        return False

