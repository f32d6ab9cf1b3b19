from __future__ import annotations

import json
import time
import uuid

import redis

from fatural.modules.processing.events import (
    RedisStatusRelay,
    StatusChannel,
    StatusEvent,
    Subscription,
)
from fatural.modules.receipts.models import ReceiptStatus


def _event(receipt_id, status, attempt=1, user_id=None, **kwargs) -> StatusEvent:
    return StatusEvent(
        receipt_id=receipt_id,
        user_id=user_id or uuid.UUID(int=1),
        status=status,
        attempt=attempt,
        **kwargs,
    )


def test_events_reach_subscriber_in_publish_order():
    channel = StatusChannel()
    rid = uuid.uuid4()
    sub = channel.subscribe(receipt_id=rid)

    channel.publish(_event(rid, ReceiptStatus.UPLOADED, attempt=0))
    channel.publish(_event(rid, ReceiptStatus.PROCESSING))
    channel.publish(_event(rid, ReceiptStatus.COMPLETED))
    channel.join()

    assert [e.status for e in sub.drain()] == [
        ReceiptStatus.UPLOADED,
        ReceiptStatus.PROCESSING,
        ReceiptStatus.COMPLETED,
    ]
    channel.close()


def test_duplicates_and_stale_events_are_dropped():
    channel = StatusChannel()
    rid = uuid.uuid4()
    sub = channel.subscribe(receipt_id=rid)

    channel.publish(_event(rid, ReceiptStatus.PROCESSING))
    channel.publish(_event(rid, ReceiptStatus.COMPLETED))
    channel.publish(_event(rid, ReceiptStatus.COMPLETED))
    channel.publish(_event(rid, ReceiptStatus.PROCESSING))
    channel.publish(_event(rid, ReceiptStatus.PROCESSING, attempt=2))
    channel.join()

    assert [(e.status, e.attempt) for e in sub.drain()] == [
        (ReceiptStatus.PROCESSING, 1),
        (ReceiptStatus.COMPLETED, 1),
        (ReceiptStatus.PROCESSING, 2),
    ]
    channel.close()


def test_subscriptions_filter_by_receipt_and_user():
    channel = StatusChannel()
    alice, bob = uuid.uuid4(), uuid.uuid4()
    r1, r2 = uuid.uuid4(), uuid.uuid4()
    by_receipt = channel.subscribe(receipt_id=r1)
    by_user = channel.subscribe(user_id=bob)
    everything = channel.subscribe()

    channel.publish(_event(r1, ReceiptStatus.PROCESSING, user_id=alice))
    channel.publish(_event(r2, ReceiptStatus.PROCESSING, user_id=bob))
    channel.join()

    assert [e.receipt_id for e in by_receipt.drain()] == [r1]
    assert [e.receipt_id for e in by_user.drain()] == [r2]
    assert {e.receipt_id for e in everything.drain()} == {r1, r2}
    channel.close()


def test_unsubscribed_queue_receives_nothing_more():
    channel = StatusChannel()
    rid = uuid.uuid4()
    sub = channel.subscribe(receipt_id=rid)
    channel.unsubscribe(sub)

    channel.publish(_event(rid, ReceiptStatus.PROCESSING))
    channel.join()

    assert sub.drain() == []
    channel.close()


def test_snapshot_marks_older_events_as_seen():
    channel = StatusChannel()
    rid = uuid.uuid4()
    sub = channel.subscribe(receipt_id=rid)
    sub.mark_seen(_event(rid, ReceiptStatus.COMPLETED))

    channel.publish(_event(rid, ReceiptStatus.PROCESSING))
    channel.publish(_event(rid, ReceiptStatus.COMMITTED))
    channel.join()

    assert [e.status for e in sub.drain()] == [ReceiptStatus.COMMITTED]
    channel.close()


def test_event_dict_round_trip_keeps_error_message():
    rid = uuid.uuid4()
    event = _event(rid, ReceiptStatus.FAILED, error_message="Extraction timed out after 1s")

    data = json.loads(event.to_json())
    restored = StatusEvent.from_dict(data)

    assert data["status"] == "FAILED"
    assert data["error_message"] == "Extraction timed out after 1s"
    assert restored.version == event.version
    assert restored.error_message == event.error_message



def test_full_queue_drops_oldest_event_not_newest():
    rid = uuid.uuid4()
    sub = Subscription(receipt_id=rid, maxsize=1)

    assert sub.deliver(_event(rid, ReceiptStatus.PROCESSING))
    assert sub.deliver(_event(rid, ReceiptStatus.COMPLETED))

    assert [e.status for e in sub.drain()] == [ReceiptStatus.COMPLETED]
    assert not sub.deliver(_event(rid, ReceiptStatus.COMPLETED))


def test_event_evicted_by_another_receipt_can_be_redelivered():
    user_id = uuid.uuid4()
    first, second = uuid.uuid4(), uuid.uuid4()
    sub = Subscription(user_id=user_id, maxsize=1)
    done = _event(first, ReceiptStatus.COMPLETED, user_id=user_id)

    assert sub.deliver(done)
    assert sub.deliver(_event(second, ReceiptStatus.PROCESSING, user_id=user_id))
    assert [e.receipt_id for e in sub.drain()] == [second]

    assert sub.deliver(done)
    assert sub.get(timeout=1) == done

class _FakePubSub:
    def __init__(self, messages):
        self._messages = list(messages)
        self.subscribed: list[str] = []
        self.closed = False

    def subscribe(self, name):
        self.subscribed.append(name)

    def get_message(self, timeout=None):
        if self._messages:
            return self._messages.pop(0)
        time.sleep(0.01)
        return None

    def close(self):
        self.closed = True


class _FakeRedis:
    def __init__(self, messages=(), fail_publish=False):
        self.published: list[tuple[str, str]] = []
        self._pubsub = _FakePubSub(messages)
        self._fail_publish = fail_publish

    def publish(self, channel, message):
        if self._fail_publish:
            raise redis.ConnectionError("redis down")
        self.published.append((channel, message))

    def pubsub(self, ignore_subscribe_messages=False):
        return self._pubsub


def test_redis_relay_feeds_remote_events_into_local_channel():
    channel = StatusChannel()
    rid = uuid.uuid4()
    sub = channel.subscribe(receipt_id=rid)
    remote = _event(rid, ReceiptStatus.COMPLETED)
    client = _FakeRedis(
        messages=[
            {"type": "message", "data": b"not json"},
            {"type": "message", "data": remote.to_json().encode()},
        ]
    )
    relay = RedisStatusRelay(channel, client=client)

    relay.start()
    received = sub.get(timeout=5)
    relay.stop()

    assert received is not None
    assert received.status == ReceiptStatus.COMPLETED
    assert client._pubsub.closed
    channel.close()


def test_publish_falls_back_to_local_channel_when_redis_is_down(monkeypatch):
    from fatural.core.config import settings
    from fatural.modules.processing import events

    monkeypatch.setattr(settings, "status_channel_backend", "redis")
    channel = events.get_status_channel()
    monkeypatch.setattr(
        events, "_relay", RedisStatusRelay(channel, client=_FakeRedis(fail_publish=True))
    )
    rid = uuid.uuid4()
    sub = channel.subscribe(receipt_id=rid)

    events.publish_status(_event(rid, ReceiptStatus.PROCESSING))
    channel.join()

    assert [e.status for e in sub.drain()] == [ReceiptStatus.PROCESSING]


def test_publish_goes_through_redis_when_configured(monkeypatch):
    from fatural.core.config import settings
    from fatural.modules.processing import events

    monkeypatch.setattr(settings, "status_channel_backend", "redis")
    client = _FakeRedis()
    monkeypatch.setattr(events, "_relay", RedisStatusRelay(events.get_status_channel(), client=client))

    events.publish_status(_event(uuid.uuid4(), ReceiptStatus.PROCESSING))

    assert len(client.published) == 1
    assert client.published[0][0] == settings.status_channel_name
