"""Tests for Redis connection settings and retry policies."""

import asyncio

import pytest
from redis.asyncio import Redis

from rescue_core_lib.errors import ConcurrencyConflictError, ValidationFailedError
from rescue_core_lib.infrastructure.redis_setup import RedisSettings, get_redis_client, parse_sentinel_hosts
from rescue_core_lib.utils.resilience import create_conflict_retry


class TestRedisSettings:
    def test_parse_sentinel_hosts(self):
        assert parse_sentinel_hosts("sentinel1:26380, sentinel2,") == [("sentinel1", 26380), ("sentinel2", 26379)]
        assert parse_sentinel_hosts("") == []

    def test_from_env(self):
        settings = RedisSettings.from_env({
            "REDIS_MODE": "Sentinel",
            "REDIS_SENTINEL_HOSTS": "s1:26379,s2:26379",
            "REDIS_MASTER_SET": "ops-master",
            "REDIS_DB": "2",
            "REDIS_KEY_PREFIX": "rescue",
        })
        assert settings.mode == "sentinel"
        assert settings.sentinel_hosts == [("s1", 26379), ("s2", 26379)]
        assert settings.master_set == "ops-master"
        assert settings.db == 2
        assert settings.key_prefix == "rescue"

    def test_defaults(self):
        settings = RedisSettings.from_env({})
        assert settings.mode == "standalone"
        assert (settings.host, settings.port) == ("localhost", 6379)
        assert settings.password is None

    def test_sentinel_requires_hosts(self):
        with pytest.raises(ValueError, match="REDIS_SENTINEL_HOSTS"):
            asyncio.run(get_redis_client(RedisSettings(mode="sentinel"), verify=False))

    def test_standalone_client_built_without_connecting(self):
        client = asyncio.run(get_redis_client(RedisSettings(host="redis.internal", port=6380), verify=False))
        assert isinstance(client, Redis)
        assert client.connection_pool.connection_kwargs["host"] == "redis.internal"


class TestConflictRetry:
    def test_retries_conflicts_then_succeeds(self):
        calls = []

        @create_conflict_retry(max_attempts=3, min_wait=0, max_wait=0, multiplier=0)
        async def write():
            calls.append(1)
            if len(calls) < 3:
                raise ConcurrencyConflictError("escalation", "esc_1", 1, 2)
            return "saved"

        assert asyncio.run(write()) == "saved"
        assert len(calls) == 3

    def test_gives_up_after_max_attempts(self):
        calls = []

        @create_conflict_retry(max_attempts=2, min_wait=0, max_wait=0, multiplier=0)
        async def write():
            calls.append(1)
            raise ConcurrencyConflictError("escalation", "esc_1", 1, 2)

        with pytest.raises(ConcurrencyConflictError):
            asyncio.run(write())
        assert len(calls) == 2

    def test_other_errors_not_retried(self):
        calls = []

        @create_conflict_retry(max_attempts=3, min_wait=0, max_wait=0, multiplier=0)
        async def write():
            calls.append(1)
            raise ValidationFailedError("bad input")

        with pytest.raises(ValidationFailedError):
            asyncio.run(write())
        assert len(calls) == 1
