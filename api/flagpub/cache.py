import json
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import redis
from redis.exceptions import LockError, RedisError

from flagpub.config import settings
from flagpub.errors import Conflict

logger = logging.getLogger(__name__)

_redis: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis


def lock_name(app_id: str) -> str:
    return f"publish-lock:{app_id}"


class RedisAppLock:
    """Per-app publish lock shared by every process talking to the same redis."""

    def __init__(self, client: Optional[redis.Redis] = None,
                 timeout: Optional[float] = None, wait: Optional[float] = None):
        self.client = client
        self.timeout = timeout if timeout is not None else settings.PUBLISH_LOCK_TIMEOUT
        self.wait = wait if wait is not None else settings.PUBLISH_LOCK_WAIT

    @contextmanager
    def hold(self, app_id: str) -> Iterator[None]:
        client = self.client or get_redis()
        lock = client.lock(lock_name(app_id), timeout=self.timeout, blocking_timeout=self.wait)
        try:
            acquired = lock.acquire()
        except RedisError as exc:
            raise Conflict(f"Could not acquire publish lock for app {app_id}: {exc}") from exc
        if not acquired:
            raise Conflict(f"Another publish for app {app_id} is still in progress")
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError:
                # expired while held; the unique version constraint still guards the record
                logger.warning("publish lock for app %s expired before release", app_id)


class LocalAppLock:
    """In-process per-app lock for single-process deployments.

    An app's entry exists only while some publish holds or waits on it.
    """

    def __init__(self, wait: Optional[float] = None):
        self.wait = wait if wait is not None else settings.PUBLISH_LOCK_WAIT
        self._guard = threading.Lock()
        # app id -> [lock, holders and waiters]
        self._locks: Dict[str, list] = {}

    def _checkout(self, app_id: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.setdefault(app_id, [threading.Lock(), 0])
            entry[1] += 1
            return entry[0]

    def _checkin(self, app_id: str) -> None:
        with self._guard:
            entry = self._locks[app_id]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[app_id]

    @contextmanager
    def hold(self, app_id: str) -> Iterator[None]:
        lock = self._checkout(app_id)
        try:
            if not lock.acquire(timeout=self.wait):
                raise Conflict(f"Another publish for app {app_id} is still in progress")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(app_id)


_local_lock = LocalAppLock()


def default_app_lock():
    if settings.PUBLISH_LOCK_BACKEND == "local":
        return _local_lock
    return RedisAppLock()


def publish_update(app_identifier: str, version: str, client: Optional[redis.Redis] = None) -> None:
    """Tell subscribers a new artifact is live. Best effort: the artifact is already published."""
    payload = json.dumps({"app_identifier": app_identifier, "version": version})
    try:
        (client or get_redis()).publish(settings.NOTIFY_CHANNEL, payload)
    except RedisError as exc:
        logger.warning("could not publish update notification for %s %s: %s", app_identifier, version, exc)
