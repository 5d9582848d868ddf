"""Redis helpers: change notifications and rate limiting.

Every committed queue mutation is announced on Redis pub/sub so that open
patient pages and the front-desk board can re-read the queue.  Events say
only that *something* changed; subscribers always re-read authoritative
state from the database and never trust the payload.

Two kinds of channel are used:

* ``clinic:queue`` receives every change.
* ``clinic:queue:patient:<id>`` receives changes that touch that patient
  (their entry was created, called, renumbered or removed).

Redis is optional.  Without ``REDIS_URL`` nothing is published and
subscriptions degrade to a timed re-read, which keeps the same contract at
a coarser latency.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Iterable, Optional, Union

import redis
from starlette.concurrency import run_in_threadpool

import config
from errors import StoreUnavailableError

logger = logging.getLogger(__name__)

GLOBAL_CHANNEL = "clinic:queue"

_redis_client: Optional[redis.Redis] = None


def patient_channel(patient_id: str) -> str:
    return f"{GLOBAL_CHANNEL}:patient:{patient_id}"


def get_redis() -> Optional[redis.Redis]:
    """Get the Redis client, or ``None`` when Redis is not configured.

    Raises StoreUnavailableError when Redis is configured but cannot be
    reached.  A failed connection is not cached, so the next call retries.
    """
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    if not config.REDIS_URL:
        return None
    try:
        client = redis.from_url(config.REDIS_URL, decode_responses=True)
        client.ping()
    except redis.RedisError as exc:
        logger.error("Redis connection failed: %s", exc)
        raise StoreUnavailableError("Notification channel unavailable") from exc
    _redis_client = client
    return _redis_client


def redis_status() -> str:
    try:
        client = get_redis()
    except StoreUnavailableError:
        return "unavailable"
    return "connected" if client is not None else "not_configured"


# ===== PUBLISHING =====

def publish_changes(patient_ids: Iterable[str], reason: str) -> None:
    """Announce a committed change to every touched patient and to the board.

    The mutation has already been committed when this runs, so failures are
    logged rather than raised.
    """
    try:
        client = get_redis()
    except StoreUnavailableError:
        logger.warning("Change notification dropped (%s): Redis unavailable", reason)
        return
    if client is None:
        return

    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        for patient_id in dict.fromkeys(patient_ids):
            client.publish(patient_channel(patient_id), json.dumps({
                "type": "queue_changed",
                "patient_id": patient_id,
                "reason": reason,
                "timestamp": timestamp,
            }))
        client.publish(GLOBAL_CHANNEL, json.dumps({
            "type": "queue_changed",
            "patient_id": None,
            "reason": reason,
            "timestamp": timestamp,
        }))
    except redis.RedisError as exc:
        logger.warning("Change notification failed (%s): %s", reason, exc)


# ===== SUBSCRIBING =====

class ChangeSubscription:
    """A pub/sub subscription to one change topic.

    ``patient_id=None`` subscribes to every change.
    """

    def __init__(self, client: redis.Redis, patient_id: Optional[str] = None) -> None:
        self.patient_id = patient_id
        self.channel = patient_channel(patient_id) if patient_id else GLOBAL_CHANNEL
        self._pubsub = client.pubsub()
        try:
            self._pubsub.subscribe(self.channel)
        except redis.RedisError as exc:
            self._pubsub.close()
            raise StoreUnavailableError("Notification channel unavailable") from exc
        self.closed = False

    def poll(self) -> bool:
        """Drain pending messages.  True when at least one change arrived.

        Several changes arriving together collapse into one, since the
        subscriber re-reads everything anyway.
        """
        changed = False
        try:
            while True:
                message = self._pubsub.get_message(timeout=0)
                if message is None:
                    break
                if message["type"] == "message":
                    changed = True
        except redis.RedisError as exc:
            raise StoreUnavailableError("Notification channel unavailable") from exc
        return changed

    async def wait(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for a change."""
        deadline = time.monotonic() + timeout
        while True:
            if await run_in_threadpool(self.poll):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(config.SUBSCRIPTION_POLL_SECONDS, remaining))

    def close(self) -> None:
        if not self.closed:
            self._pubsub.close()
            self.closed = True


class PollingSubscription:
    """Stand-in used when Redis is not configured: reports a change every
    ``interval`` seconds so viewers re-read on a timer.
    """

    def __init__(self, interval: float, patient_id: Optional[str] = None) -> None:
        self.interval = interval
        self.patient_id = patient_id
        self.closed = False

    async def wait(self, timeout: float) -> bool:
        await asyncio.sleep(min(self.interval, timeout))
        return self.interval <= timeout

    def close(self) -> None:
        self.closed = True


Subscription = Union[ChangeSubscription, PollingSubscription]


def subscribe(patient_id: Optional[str] = None) -> Subscription:
    client = get_redis()
    if client is None:
        return PollingSubscription(config.FALLBACK_POLL_SECONDS, patient_id)
    return ChangeSubscription(client, patient_id)


# ===== RATE LIMITING =====

def check_rate_limit(key: str, action: str = "register", limit: Optional[int] = None,
                     window: Optional[int] = None) -> bool:
    """Returns True if allowed, False if rate limited.

    Requests are allowed when Redis is not configured or unavailable.
    """
    limit = config.RATE_LIMIT if limit is None else limit
    window = config.RATE_LIMIT_WINDOW if window is None else window
    try:
        client = get_redis()
    except StoreUnavailableError:
        return True
    if client is None:
        return True

    redis_key = f"rate_limit:{action}:{key}"
    try:
        count = client.incr(redis_key)
        if count == 1:
            client.expire(redis_key, window)
    except redis.RedisError as exc:
        logger.warning("Rate limit check failed: %s", exc)
        return True
    return count <= limit
