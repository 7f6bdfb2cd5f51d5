"""Infrastructure adapters"""

from rescue_core_lib.infrastructure.redis_setup import RedisSettings, get_redis_client, parse_sentinel_hosts

__all__ = ["RedisSettings", "get_redis_client", "parse_sentinel_hosts"]
