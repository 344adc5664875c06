# mailgate: Distributed Job Lock
#
# Fleet-wide mutual exclusion for scheduled jobs without a leader
# election system: one Redis key per job, created with SET NX EX.
#
#   Unlocked --try_acquire (one winner)--> Acquired --TTL / release--> Unlocked
#
# Correctness boundary: the TTL must exceed the job's worst-case runtime.
# If a job outlives its TTL the key expires and a second instance can
# acquire it while the first is still running. Tune the TTL; this module
# does not extend leases.

import logging
import secrets
from typing import Dict, Optional

from redis.exceptions import WatchError

from ..store.keys import KeySpace
from ..store.redis_client import guarded

logger = logging.getLogger(__name__)


class DistributedJobLock:
    def __init__(self, client, keys: Optional[KeySpace] = None, timeout: float = 2.0):
        self._client = client
        self._keys = keys or KeySpace()
        self._timeout = timeout
        self._tokens: Dict[str, str] = {}  # job name -> token this instance holds

    async def try_acquire(self, job_name: str, ttl: int) -> bool:
        """Create the job's lock key if absent. True iff this caller won the race."""
        if ttl is None or int(ttl) <= 0:
            raise ValueError("job locks must carry a positive TTL")
        token = secrets.token_hex(16)
        created = await guarded(
            "job_lock.acquire",
            self._client.set(self._keys.job_lock(job_name), token, nx=True, ex=int(ttl)),
            self._timeout,
        )
        if not created:
            logger.info("Job %s already running elsewhere, skipping", job_name)
            return False
        self._tokens[job_name] = token
        logger.info("Acquired job lock %s (ttl=%ss)", job_name, ttl)
        return True

    async def release(self, job_name: str) -> bool:
        """Delete the lock only if it still holds this instance's token."""
        token = self._tokens.pop(job_name, None)
        if token is None:
            return False
        key = self._keys.job_lock(job_name)
        try:
            released = await guarded("job_lock.release", self._compare_and_delete(key, token), self._timeout)
        except WatchError:
            released = False
        if not released:
            logger.warning("Job lock %s expired or was taken over before release", job_name)
        return released

    async def _compare_and_delete(self, key: str, token: str) -> bool:
        async with self._client.pipeline(transaction=True) as pipe:
            await pipe.watch(key)
            current = await pipe.get(key)
            if current != token:
                await pipe.unwatch()
                return False
            pipe.multi()
            pipe.delete(key)
            await pipe.execute()
            return True

    async def holder(self, job_name: str) -> Optional[str]:
        """Current lock token for ``job_name`` (None when unlocked)."""
        return await guarded(
            "job_lock.holder", self._client.get(self._keys.job_lock(job_name)), self._timeout
        )

    def holds(self, job_name: str) -> bool:
        """Whether this instance believes it holds the lock."""
        return job_name in self._tokens
