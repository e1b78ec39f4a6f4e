"""Tests for callback state storage."""

import asyncio
import hashlib

import pytest
from redis.commands.core import AsyncScript
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import NoScriptError

from identityprovider.config import Settings
from identityprovider.errors import StateStoreUnavailableError, StateValidationError
from identityprovider.state import (
    CallbackState,
    InMemoryStateStore,
    RedisStateStore,
    create_state_store,
)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class Utf8Encoder:
    def encode(self, value: str) -> bytes:
        return value.encode("utf-8")


class FakeRedis:
    """Just enough of redis.asyncio for the state store."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.scripts: dict[str, str] = {}
        self.down = False

    def get_encoder(self) -> Utf8Encoder:
        return Utf8Encoder()

    def register_script(self, script: str) -> AsyncScript:
        return AsyncScript(self, script)

    async def script_load(self, script: str) -> str:
        sha = hashlib.sha1(script.encode("utf-8")).hexdigest()
        self.scripts[sha] = script
        return sha

    async def set(self, key, value, ex=None, nx=False):
        if self.down:
            raise RedisConnectionError("Connection refused")
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def evalsha(self, sha, numkeys, *keys_and_args):
        if self.down:
            raise RedisConnectionError("Connection refused")
        if sha not in self.scripts:
            raise NoScriptError("No matching script. Please use EVAL.")
        key = keys_and_args[0]
        return self.data.pop(key, None)

    async def aclose(self):
        pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStateStore(ttl_seconds=300, clock=clock)


class TestInMemoryStateStore:
    """Tests for the in-memory state store."""

    @pytest.mark.asyncio
    async def test_issue_creates_unique_states(self, store):
        first = await store.issue("acme", "https://app.test/cb", session_id="s1")
        second = await store.issue("acme", "https://app.test/cb", session_id="s1")

        assert first.value != second.value
        assert len(first.value) >= 32
        assert first.expires_at == first.created_at + 300
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_consume_once(self, store):
        issued = await store.issue("acme", "https://app.test/cb", session_id="s1")

        consumed = await store.consume(issued.value, "acme", session_id="s1")

        assert consumed == issued
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_replay_rejected(self, store):
        issued = await store.issue("acme", "https://app.test/cb", session_id="s1")
        await store.consume(issued.value, "acme", session_id="s1")

        with pytest.raises(StateValidationError):
            await store.consume(issued.value, "acme", session_id="s1")

    @pytest.mark.asyncio
    async def test_never_issued_rejected(self, store):
        with pytest.raises(StateValidationError):
            await store.consume("forged", "acme", session_id="s1")

    @pytest.mark.asyncio
    async def test_expired_rejected(self, store, clock):
        issued = await store.issue("acme", "https://app.test/cb", session_id="s1")
        clock.now += 301

        with pytest.raises(StateValidationError, match="Expired"):
            await store.consume(issued.value, "acme", session_id="s1")

    @pytest.mark.asyncio
    async def test_wrong_provider_rejected_and_burned(self, store):
        issued = await store.issue("acme", "https://app.test/cb", session_id="s1")

        with pytest.raises(StateValidationError):
            await store.consume(issued.value, "other", session_id="s1")
        with pytest.raises(StateValidationError):
            await store.consume(issued.value, "acme", session_id="s1")

    @pytest.mark.asyncio
    async def test_session_binding(self, store):
        issued = await store.issue("acme", "https://app.test/cb", session_id="s1")

        with pytest.raises(StateValidationError, match="session"):
            await store.consume(issued.value, "acme", session_id="s2")

    @pytest.mark.asyncio
    async def test_missing_session_rejected_for_bound_state(self, store):
        issued = await store.issue("acme", "https://app.test/cb", session_id="s1")

        with pytest.raises(StateValidationError):
            await store.consume(issued.value, "acme", session_id=None)

    @pytest.mark.asyncio
    async def test_unbound_state_accepts_any_session(self, store):
        issued = await store.issue("acme", "https://app.test/cb")

        consumed = await store.consume(issued.value, "acme", session_id="anything")

        assert consumed.session_id is None

    @pytest.mark.asyncio
    async def test_concurrent_consume_single_winner(self, store):
        """Duplicate callbacks racing on one state: exactly one succeeds."""
        issued = await store.issue("acme", "https://app.test/cb", session_id="s1")

        results = await asyncio.gather(
            *(store.consume(issued.value, "acme", session_id="s1") for _ in range(10)),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, CallbackState)]
        failures = [r for r in results if isinstance(r, StateValidationError)]
        assert len(successes) == 1
        assert len(failures) == 9

    @pytest.mark.asyncio
    async def test_expired_states_purged_on_issue(self, store, clock):
        await store.issue("acme", "https://app.test/cb")
        clock.now += 301

        await store.issue("acme", "https://app.test/cb")

        assert len(store) == 1


class TestRedisStateStore:
    """Tests for the Redis state store against a fake client."""

    @pytest.fixture
    def redis(self):
        return FakeRedis()

    @pytest.fixture
    def redis_store(self, redis, clock):
        return RedisStateStore(ttl_seconds=120, clock=clock, client=redis)

    @pytest.mark.asyncio
    async def test_issue_sets_expiry(self, redis_store, redis):
        issued = await redis_store.issue("acme", "https://app.test/cb", session_id="s1", nonce="n1")

        key = f"idp:state:{issued.value}"
        assert key in redis.data
        assert redis.ttls[key] == 120
        assert CallbackState.from_json(redis.data[key]) == issued

    @pytest.mark.asyncio
    async def test_consume_and_replay(self, redis_store):
        issued = await redis_store.issue("acme", "https://app.test/cb", session_id="s1")

        consumed = await redis_store.consume(issued.value, "acme", session_id="s1")
        assert consumed.redirect_uri == "https://app.test/cb"

        with pytest.raises(StateValidationError):
            await redis_store.consume(issued.value, "acme", session_id="s1")

    @pytest.mark.asyncio
    async def test_unknown_state(self, redis_store):
        with pytest.raises(StateValidationError):
            await redis_store.consume("forged", "acme")

    @pytest.mark.asyncio
    async def test_take_script_loaded_once(self, redis_store, redis):
        for _ in range(2):
            issued = await redis_store.issue("acme", "https://app.test/cb")
            await redis_store.consume(issued.value, "acme")

        assert len(redis.scripts) == 1

    @pytest.mark.asyncio
    async def test_consume_after_script_cache_flush(self, redis_store, redis):
        first = await redis_store.issue("acme", "https://app.test/cb")
        await redis_store.consume(first.value, "acme")
        second = await redis_store.issue("acme", "https://app.test/cb", session_id="s1")

        redis.scripts.clear()

        consumed = await redis_store.consume(second.value, "acme", session_id="s1")
        assert consumed == second
        assert len(redis.scripts) == 1

    @pytest.mark.asyncio
    async def test_issue_when_redis_down(self, redis_store, redis):
        redis.down = True

        with pytest.raises(StateStoreUnavailableError) as exc_info:
            await redis_store.issue("acme", "https://app.test/cb")
        assert exc_info.value.status_code == 503
        assert exc_info.value.provider_name == "acme"

    @pytest.mark.asyncio
    async def test_consume_when_redis_down(self, redis_store, redis):
        issued = await redis_store.issue("acme", "https://app.test/cb")
        redis.down = True

        with pytest.raises(StateStoreUnavailableError):
            await redis_store.consume(issued.value, "acme")

        redis.down = False
        consumed = await redis_store.consume(issued.value, "acme")
        assert consumed == issued

    @pytest.mark.asyncio
    async def test_discard(self, redis_store, redis):
        issued = await redis_store.issue("acme", "https://app.test/cb")

        await redis_store.discard(issued.value)

        assert redis.data == {}

    @pytest.mark.asyncio
    async def test_close_releases_client(self, redis_store):
        await redis_store.issue("acme", "https://app.test/cb")

        await redis_store.close()

        assert redis_store._redis is None


class TestCreateStateStore:
    """Tests for backend selection."""

    def test_memory_backend(self):
        store = create_state_store(Settings(state_backend="memory", state_ttl_seconds=60))

        assert isinstance(store, InMemoryStateStore)
        assert store.ttl_seconds == 60

    def test_redis_backend(self):
        store = create_state_store(
            Settings(state_backend="redis", redis_url="redis://localhost:6379/0")
        )

        assert isinstance(store, RedisStateStore)

    def test_redis_backend_requires_url(self):
        with pytest.raises(ValueError):
            create_state_store(Settings(state_backend="redis", redis_url=None))

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_state_store(Settings(state_backend="memcached"))
