import asyncio

import pytest

from services.concurrency_control import ConcurrencyController
from services.errors import BundleSyncError, LockTimeoutError

pytestmark = pytest.mark.anyio


async def test_same_key_is_serialised(locks):
    key = ConcurrencyController.bundle_key("shop", "b1")
    trace = []

    async def worker(name):
        async with locks.hold(key):
            trace.append(f"{name}-in")
            await asyncio.sleep(0.01)
            trace.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert trace in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])


async def test_different_keys_do_not_block(locks):
    entered = asyncio.Event()

    async with locks.hold(ConcurrencyController.bundle_key("shop", "b1")):
        async with locks.hold(ConcurrencyController.bundle_key("shop", "b2")):
            entered.set()

    assert entered.is_set()


async def test_lock_entries_are_released(locks):
    key = ConcurrencyController.rule_key("shop", "r1")

    async with locks.hold(key):
        assert locks.is_locked(key)

    assert not locks.is_locked(key)
    assert locks._local_locks == {}


async def test_lock_released_when_block_raises(locks):
    key = ConcurrencyController.assignment_key("shop", "s1", "p1")

    with pytest.raises(RuntimeError):
        async with locks.hold(key):
            raise RuntimeError("boom")

    assert not locks.is_locked(key)


async def test_empty_key_is_rejected(locks):
    with pytest.raises(ValueError):
        async with locks.hold(""):
            pass


def test_advisory_lock_key_is_stable_positive_int():
    controller = ConcurrencyController(use_advisory_locks=False)
    key = controller._generate_lock_key("bundle:shop:b1")

    assert key == controller._generate_lock_key("bundle:shop:b1")
    assert 0 <= key <= 2147483647
    assert key != controller._generate_lock_key("bundle:shop:b2")


class _LockConnection:
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


class _LockEngine:
    def __init__(self):
        self.connections = []

    async def connect(self):
        conn = _LockConnection()
        self.connections.append(conn)
        return conn


async def test_advisory_lock_timeout_is_a_retryable_sync_error(monkeypatch):
    lock_engine = _LockEngine()
    controller = ConcurrencyController(lock_engine, use_advisory_locks=True)

    async def never_acquired(conn, lock_key, key):
        return False

    monkeypatch.setattr(controller, "_acquire_advisory_lock_with_backoff", never_acquired)
    key = ConcurrencyController.bundle_key("shop", "b1")

    with pytest.raises(LockTimeoutError) as exc_info:
        async with controller.hold(key):
            pass

    assert isinstance(exc_info.value, BundleSyncError)
    assert exc_info.value.status_code == 503
    assert exc_info.value.to_dict()["lockKey"] == key
    assert not controller.is_locked(key)
    assert [conn.closed for conn in lock_engine.connections] == [True]
