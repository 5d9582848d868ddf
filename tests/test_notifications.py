import asyncio
import json

import pytest

import config
import notifications
import services
from errors import StoreUnavailableError


def drain(pubsub):
    messages = []
    while True:
        message = pubsub.get_message(timeout=0)
        if message is None:
            return messages
        if message["type"] == "message":
            messages.append(json.loads(message["data"]))


def test_without_redis_nothing_is_published_and_viewers_poll():
    assert notifications.get_redis() is None
    notifications.publish_changes(["p1"], "joined")

    subscription = notifications.subscribe("p1")
    assert isinstance(subscription, notifications.PollingSubscription)
    assert subscription.interval == config.FALLBACK_POLL_SECONDS


def test_polling_subscription_reports_change_every_interval():
    subscription = notifications.PollingSubscription(0.01)
    assert asyncio.run(subscription.wait(1)) is True
    slow = notifications.PollingSubscription(5)
    assert asyncio.run(slow.wait(0.01)) is False


def test_publish_reaches_patient_and_global_channels(fake_redis):
    patient = fake_redis.pubsub()
    patient.subscribe(notifications.patient_channel("p1"))
    other = fake_redis.pubsub()
    other.subscribe(notifications.patient_channel("p2"))
    everything = fake_redis.pubsub()
    everything.subscribe(notifications.GLOBAL_CHANNEL)

    notifications.publish_changes(["p1", "p1"], "called")

    patient_messages = drain(patient)
    assert len(patient_messages) == 1
    assert patient_messages[0]["patient_id"] == "p1"
    assert patient_messages[0]["reason"] == "called"
    assert drain(other) == []
    assert [m["patient_id"] for m in drain(everything)] == [None]


def test_subscription_sees_changes_for_its_patient_only(fake_redis):
    subscription = notifications.subscribe("p1")
    assert isinstance(subscription, notifications.ChangeSubscription)
    assert subscription.poll() is False

    notifications.publish_changes(["p2"], "joined")
    assert subscription.poll() is False

    notifications.publish_changes(["p1"], "joined")
    notifications.publish_changes(["p1"], "called")
    # both changes collapse into one re-read
    assert subscription.poll() is True
    assert subscription.poll() is False
    subscription.close()
    assert subscription.closed


def test_subscription_wait(fake_redis):
    subscription = notifications.subscribe()
    assert asyncio.run(subscription.wait(0.05)) is False
    notifications.publish_changes([], "settings")
    assert asyncio.run(subscription.wait(0.05)) is True
    subscription.close()


def test_queue_mutations_notify_every_touched_patient(fake_redis, enroll_many, session):
    (a, ea), (b, eb), (c, ec) = enroll_many("A", "B", "C")
    subs = {p.id: notifications.subscribe(p.id) for p in (a, b, c)}
    board = notifications.subscribe()

    services.complete(session, eb.id, b.id)

    assert subs[a.id].poll() is False
    assert subs[b.id].poll() is True
    assert subs[c.id].poll() is True
    assert board.poll() is True

    services.call_next(session)
    assert subs[a.id].poll() is True
    assert subs[c.id].poll() is False


def test_unreachable_redis_raises_store_unavailable(monkeypatch):
    monkeypatch.setattr(config, "REDIS_URL", "redis://127.0.0.1:1/0")
    with pytest.raises(StoreUnavailableError):
        notifications.get_redis()
    with pytest.raises(StoreUnavailableError):
        notifications.subscribe("p1")
    assert notifications.redis_status() == "unavailable"
    # a committed change is not undone by a failed announcement
    notifications.publish_changes(["p1"], "joined")


def test_rate_limit(fake_redis):
    assert notifications.check_rate_limit("0612345678", limit=2, window=60)
    assert notifications.check_rate_limit("0612345678", limit=2, window=60)
    assert not notifications.check_rate_limit("0612345678", limit=2, window=60)
    assert notifications.check_rate_limit("0712345678", limit=2, window=60)
    assert 0 < fake_redis.ttl("rate_limit:register:0612345678") <= 60


def test_rate_limit_allows_without_redis():
    for _ in range(10):
        assert notifications.check_rate_limit("0612345678", limit=1)
