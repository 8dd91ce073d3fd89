"""
Centralized Redis configuration for the task monitor (configs).
"""

from typing import Any

import redis.asyncio as redis

from taskmonitor.configs.config import config


class RedisConfig:
    @classmethod
    def get_redis_client(cls) -> redis.Redis:
        return redis.Redis(
            host=config.redis_host,
            port=config.redis_port,
            db=config.redis_db,
            password=config.redis_password,
            decode_responses=True,
            socket_timeout=5.0,
        )

    @classmethod
    def get_connection_info(cls) -> dict[str, Any]:
        """Return non-sensitive Redis connection information for diagnostics."""
        return {
            "host": config.redis_host,
            "port": config.redis_port,
            "db": config.redis_db,
            "password_set": bool(config.redis_password),
        }
