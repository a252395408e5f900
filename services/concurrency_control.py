"""
Keyed mutex for bundle, rule and assignment mutations.

Two layers:
- an in-process asyncio.Lock per key, so coroutines in this worker queue up
- a PostgreSQL advisory lock per key when the engine is PostgreSQL, so other
  workers and replicas queue up too
"""
import asyncio
import hashlib
import time
import logging
import random
from typing import Optional, Dict, Tuple
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy import text
from database import engine
from services.errors import LockTimeoutError

logger = logging.getLogger(__name__)


class ConcurrencyController:
    """
    Per-key mutual exclusion:
    - refcounted in-process locks, dropped once nobody holds or waits on them
    - dedicated connection per advisory lock to prevent lock leaks
    - exponential backoff with jitter for advisory lock acquisition
    """

    def __init__(self, engine: Optional[AsyncEngine] = None, use_advisory_locks: Optional[bool] = None):
        self.engine = engine
        if use_advisory_locks is None:
            use_advisory_locks = engine is not None and engine.dialect.name == "postgresql"
        self.use_advisory_locks = use_advisory_locks
        self.lock_timeout_seconds = 60
        self.max_retries = 12
        self.base_retry_delay = 0.05
        self.max_retry_delay = 5.0
        self.jitter_factor = 0.3  # Add randomization to prevent thundering herd
        self._local_locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    @staticmethod
    def bundle_key(shop: str, bundle_id: str) -> str:
        return f"bundle:{shop}:{bundle_id}"

    @staticmethod
    def bundle_name_key(shop: str, bundle_name: str) -> str:
        return f"bundle-name:{shop}:{bundle_name}"

    @staticmethod
    def rule_key(shop: str, rule_id: str) -> str:
        return f"rule:{shop}:{rule_id}"

    @staticmethod
    def assignment_key(shop: str, session_id: str, product_id: str) -> str:
        return f"assignment:{shop}:{session_id}:{product_id}"

    def _generate_lock_key(self, key: str) -> int:
        """
        Generate an integer lock key from the mutex key.
        PostgreSQL advisory locks require integer keys
        """
        hash_digest = hashlib.sha256(key.encode()).hexdigest()
        lock_key = int(hash_digest[:8], 16)
        # Ensure positive 32-bit signed integer
        if lock_key > 2147483647:
            lock_key = lock_key - 4294967296
        return abs(lock_key)

    def _local_lock(self, key: str) -> asyncio.Lock:
        lock, refs = self._local_locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._local_locks[key] = (lock, refs + 1)
        return lock

    def _release_local_ref(self, key: str) -> None:
        lock, refs = self._local_locks[key]
        if refs <= 1:
            del self._local_locks[key]
        else:
            self._local_locks[key] = (lock, refs - 1)

    async def _acquire_advisory_lock_with_backoff(self, conn: AsyncConnection, lock_key: int, key: str) -> bool:
        """
        Acquire PostgreSQL advisory lock with exponential backoff and jitter
        Returns True if lock acquired, False if timeout
        """
        start_time = time.time()

        for attempt in range(self.max_retries):
            result = await conn.execute(
                text("SELECT pg_try_advisory_lock(:lock_key)"),
                {"lock_key": lock_key}
            )
            if result.scalar():
                logger.debug(f"Acquired advisory lock {lock_key} for {key} on attempt {attempt + 1}")
                return True

            elapsed = time.time() - start_time
            if elapsed >= self.lock_timeout_seconds:
                logger.warning(f"Lock acquisition timed out after {elapsed:.1f}s for {key}")
                return False

            base_delay = self.base_retry_delay * (2 ** attempt)
            jitter = base_delay * self.jitter_factor * random.random()
            delay = min(base_delay + jitter, self.max_retry_delay)

            logger.info(f"Lock {lock_key} busy for {key}, retry {attempt + 1}/{self.max_retries} in {delay:.2f}s")
            await asyncio.sleep(delay)

        logger.warning(f"Failed to acquire advisory lock {lock_key} for {key} after {self.max_retries} attempts")
        return False

    async def _release_advisory_lock(self, conn: AsyncConnection, lock_key: int, key: str) -> bool:
        try:
            result = await conn.execute(
                text("SELECT pg_advisory_unlock(:lock_key)"),
                {"lock_key": lock_key}
            )
            released = bool(result.scalar())
            if not released:
                logger.warning(f"Failed to release advisory lock {lock_key} for {key} (may not have been held)")
            return released
        except Exception as e:
            logger.error(f"Error releasing advisory lock {lock_key} for {key}: {e}")
            return False

    @asynccontextmanager
    async def _advisory_lock(self, key: str):
        lock_key = self._generate_lock_key(key)
        conn = await self.engine.connect()
        try:
            acquired = await self._acquire_advisory_lock_with_backoff(conn, lock_key, key)
            if not acquired:
                raise LockTimeoutError(key)
            try:
                yield
            finally:
                await self._release_advisory_lock(conn, lock_key, key)
        finally:
            try:
                await conn.close()
            except Exception as e:
                logger.error(f"Error closing lock connection for {key}: {e}")

    @asynccontextmanager
    async def hold(self, key: str):
        """
        Hold the mutex for ``key`` for the duration of the block.

        Usage:
            async with concurrency_controller.hold(ConcurrencyController.bundle_key(shop, bundle_id)):
                await mutate_bundle()
        """
        if not key:
            raise ValueError("Lock key cannot be empty")

        lock = self._local_lock(key)
        try:
            async with lock:
                if self.use_advisory_locks:
                    async with self._advisory_lock(key):
                        yield
                else:
                    yield
        finally:
            self._release_local_ref(key)

    def is_locked(self, key: str) -> bool:
        entry = self._local_locks.get(key)
        return bool(entry and entry[0].locked())


# Global instance for application use
concurrency_controller = ConcurrencyController(engine)
