"""Redis connection factory for the aggregate store.

Supports standalone Redis (development, single node) and Redis Sentinel
(HA deployments). Settings come from ``REDIS_*`` environment variables
unless passed explicitly.
"""

import logging
import os
from typing import List, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, field_validator
from redis.asyncio import Redis
from redis.asyncio.sentinel import Sentinel

from rescue_core_lib.utils.resilience import service_startup_retry

logger = logging.getLogger(__name__)

DEFAULT_SENTINEL_PORT = 26379


class RedisSettings(BaseModel):
    """Connection settings.

    Environment Variables:
        REDIS_MODE: "standalone" (default) or "sentinel"
        REDIS_HOST / REDIS_PORT: standalone address (localhost:6379)
        REDIS_SENTINEL_HOSTS: comma-separated "host:port" pairs for Sentinel
        REDIS_MASTER_SET: Sentinel master set name (default: "mymaster")
        REDIS_DB: database index (default: 0)
        REDIS_PASSWORD: password (optional)
        REDIS_KEY_PREFIX: namespace for aggregate keys (default: "ops")
    """

    mode: Literal["standalone", "sentinel"] = "standalone"
    host: str = "localhost"
    port: int = Field(default=6379, ge=1, le=65535)
    db: int = Field(default=0, ge=0)
    password: Optional[str] = None
    sentinel_hosts: List[Tuple[str, int]] = Field(default_factory=list)
    master_set: str = "mymaster"
    key_prefix: str = "ops"
    socket_keepalive: bool = True
    health_check_interval: int = 30

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, value):
        return value.lower() if isinstance(value, str) else value

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RedisSettings":
        env = os.environ if environ is None else environ
        return cls(
            mode=env.get("REDIS_MODE", "standalone"),
            host=env.get("REDIS_HOST", "localhost"),
            port=int(env.get("REDIS_PORT", "6379")),
            db=int(env.get("REDIS_DB", "0")),
            password=env.get("REDIS_PASSWORD") or None,
            sentinel_hosts=parse_sentinel_hosts(env.get("REDIS_SENTINEL_HOSTS", "")),
            master_set=env.get("REDIS_MASTER_SET", "mymaster"),
            key_prefix=env.get("REDIS_KEY_PREFIX", "ops"),
        )


def parse_sentinel_hosts(hosts_str: str) -> List[Tuple[str, int]]:
    """Parse a comma-separated sentinel host:port string.

    Example:
        >>> parse_sentinel_hosts("sentinel1:26379, sentinel2")
        [('sentinel1', 26379), ('sentinel2', 26379)]
    """
    sentinels = []
    for host_port in hosts_str.split(","):
        host_port = host_port.strip()
        if not host_port:
            continue
        if ":" in host_port:
            host, port_str = host_port.rsplit(":", 1)
            sentinels.append((host, int(port_str)))
        else:
            sentinels.append((host_port, DEFAULT_SENTINEL_PORT))
    return sentinels


@service_startup_retry
async def _verify_redis_connection(client: Redis) -> None:
    await client.ping()
    logger.info("Redis connection verified")


async def get_redis_client(settings: Optional[RedisSettings] = None, verify: bool = True) -> Redis:
    """Create an async Redis client for standalone or Sentinel deployments.

    Raises:
        ValueError: Sentinel mode without any sentinel hosts
        redis.exceptions.ConnectionError: verification failed after retries
    """
    settings = settings or RedisSettings.from_env()
    logger.info(f"Initializing Redis client in {settings.mode} mode")

    if settings.mode == "sentinel":
        if not settings.sentinel_hosts:
            raise ValueError("REDIS_SENTINEL_HOSTS is required for Sentinel mode")
        logger.info(
            f"Connecting to Redis Sentinel: master={settings.master_set}, sentinels={settings.sentinel_hosts}"
        )
        sentinel = Sentinel(
            settings.sentinel_hosts,
            sentinel_kwargs={"password": settings.password} if settings.password else {},
            socket_keepalive=settings.socket_keepalive,
            health_check_interval=settings.health_check_interval,
        )
        client = sentinel.master_for(
            settings.master_set,
            db=settings.db,
            password=settings.password,
            decode_responses=True,
            socket_keepalive=settings.socket_keepalive,
            health_check_interval=settings.health_check_interval,
        )
    else:
        logger.info(f"Connecting to standalone Redis: {settings.host}:{settings.port}/{settings.db}")
        client = Redis(
            host=settings.host,
            port=settings.port,
            db=settings.db,
            password=settings.password,
            decode_responses=True,
            socket_keepalive=settings.socket_keepalive,
            health_check_interval=settings.health_check_interval,
            socket_connect_timeout=5,
        )

    if verify:
        await _verify_redis_connection(client)
    return client
