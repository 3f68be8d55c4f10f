# jobs/connection.py — Redis connection for the queue store and relay
import os
import logging

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

logger = logging.getLogger("collabute.jobs.redis")

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD") or None
REDIS_DB = int(os.getenv("REDIS_DB", "0"))
REDIS_TLS = os.getenv("REDIS_TLS", "false").lower() == "true"


def build_redis_url() -> str:
    scheme = "rediss" if REDIS_TLS else "redis"
    auth = f":{REDIS_PASSWORD}@" if REDIS_PASSWORD else ""
    return f"{scheme}://{auth}{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}"


def create_redis() -> redis.Redis:
    """Pooled client; responses are decoded so job ids come back as str"""
    pool = ConnectionPool.from_url(
        build_redis_url(),
        max_connections=20,
        retry_on_timeout=True,
        socket_connect_timeout=10,
        socket_timeout=10,
        health_check_interval=30,
        decode_responses=True,
    )
    logger.info(f"Redis pool configured for {REDIS_HOST}:{REDIS_PORT} (tls={REDIS_TLS})")
    return redis.Redis(connection_pool=pool)
