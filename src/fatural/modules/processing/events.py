from __future__ import annotations

import json
import queue
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import redis

from fatural.core.config import settings
from fatural.core.logging import get_logger, log_event, log_exception
from fatural.modules.receipts.models import ReceiptStatus

logger = get_logger(__name__)

_STATUS_RANK: dict[ReceiptStatus, int] = {
    ReceiptStatus.UPLOADED: 0,
    ReceiptStatus.PROCESSING: 1,
    ReceiptStatus.COMPLETED: 2,
    ReceiptStatus.FAILED: 2,
    ReceiptStatus.COMMITTED: 3,
}


@dataclass(frozen=True)
class StatusEvent:
    receipt_id: uuid.UUID
    user_id: uuid.UUID
    status: ReceiptStatus
    attempt: int
    error_message: str | None = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def version(self) -> tuple[int, int]:
        return (self.attempt, _STATUS_RANK[self.status])

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "receipt_id": str(self.receipt_id),
            "user_id": str(self.user_id),
            "status": self.status.value,
            "attempt": self.attempt,
            "occurred_at": self.occurred_at.isoformat(),
        }
        if self.error_message:
            payload["error_message"] = self.error_message
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StatusEvent:
        return cls(
            receipt_id=uuid.UUID(str(data["receipt_id"])),
            user_id=uuid.UUID(str(data["user_id"])),
            status=ReceiptStatus(data["status"]),
            attempt=int(data.get("attempt") or 0),
            error_message=data.get("error_message"),
            occurred_at=datetime.fromisoformat(data["occurred_at"])
            if data.get("occurred_at")
            else datetime.now(UTC),
        )


class Subscription:
    def __init__(
        self,
        *,
        receipt_id: uuid.UUID | None = None,
        user_id: uuid.UUID | None = None,
        maxsize: int = 1000,
    ):
        self.receipt_id = receipt_id
        self.user_id = user_id
        self._queue: queue.Queue[StatusEvent] = queue.Queue(maxsize=maxsize)
        self._last_versions: dict[uuid.UUID, tuple[int, int]] = {}
        self._lock = threading.Lock()

    def matches(self, event: StatusEvent) -> bool:
        if self.receipt_id is not None and event.receipt_id != self.receipt_id:
            return False
        if self.user_id is not None and event.user_id != self.user_id:
            return False
        return True

    def mark_seen(self, event: StatusEvent) -> None:
        """Record a state the consumer already has (e.g. a snapshot) so older events are dropped."""
        with self._lock:
            last = self._last_versions.get(event.receipt_id)
            if last is None or event.version > last:
                self._last_versions[event.receipt_id] = event.version

    def deliver(self, event: StatusEvent) -> bool:
        with self._lock:
            last = self._last_versions.get(event.receipt_id)
            if last is not None and event.version <= last:
                return False
            while True:
                try:
                    self._queue.put_nowait(event)
                    break
                except queue.Full:
                    # Drop the oldest queued event; the newest state must get through.
                    try:
                        dropped = self._queue.get_nowait()
                    except queue.Empty:
                        continue
                    if self._last_versions.get(dropped.receipt_id) == dropped.version:
                        del self._last_versions[dropped.receipt_id]
                    log_event(
                        logger,
                        "status.subscriber.overflow",
                        receipt_id=str(dropped.receipt_id),
                        status=dropped.status.value,
                    )
            self._last_versions[event.receipt_id] = event.version
        return True

    def get(self, timeout: float | None = None) -> StatusEvent | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[StatusEvent]:
        events: list[StatusEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events


class StatusChannel:
    def __init__(self) -> None:
        self._inbox: queue.Queue[StatusEvent | None] = queue.Queue()
        self._subscriptions: list[Subscription] = []
        self._subs_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._start_lock = threading.Lock()

    def _ensure_dispatcher(self) -> None:
        with self._start_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._dispatch_loop, name="status-dispatcher", daemon=True
            )
            self._thread.start()

    def publish(self, event: StatusEvent) -> None:
        self._ensure_dispatcher()
        self._inbox.put(event)

    def subscribe(
        self, *, receipt_id: uuid.UUID | None = None, user_id: uuid.UUID | None = None
    ) -> Subscription:
        sub = Subscription(receipt_id=receipt_id, user_id=user_id)
        with self._subs_lock:
            self._subscriptions = [*self._subscriptions, sub]
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._subs_lock:
            self._subscriptions = [s for s in self._subscriptions if s is not sub]

    def join(self) -> None:
        """Block until every event published so far has been fanned out."""
        self._inbox.join()

    def close(self) -> None:
        with self._start_lock:
            thread = self._thread
            self._thread = None
        if thread is not None and thread.is_alive():
            self._inbox.put(None)
            thread.join(timeout=5)

    def _dispatch_loop(self) -> None:
        while True:
            event = self._inbox.get()
            try:
                if event is None:
                    return
                with self._subs_lock:
                    subscribers = self._subscriptions
                for sub in subscribers:
                    if sub.matches(event):
                        sub.deliver(event)
            except Exception:  # noqa: BLE001
                log_exception(logger, "status.dispatch.error")
            finally:
                self._inbox.task_done()


class RedisStatusRelay:
    def __init__(self, channel: StatusChannel, *, client: redis.Redis | None = None):
        self._channel = channel
        self._client = client or redis.Redis.from_url(settings.redis_url)
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    def publish(self, event: StatusEvent) -> None:
        self._client.publish(settings.status_channel_name, event.to_json())

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._listen, name="status-relay", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _listen(self) -> None:
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(settings.status_channel_name)
        log_event(logger, "status.relay.start", channel=settings.status_channel_name)
        try:
            while not self._stop.is_set():
                message = pubsub.get_message(timeout=1.0)
                if not message or message.get("type") != "message":
                    continue
                try:
                    event = StatusEvent.from_dict(json.loads(message["data"]))
                except (ValueError, KeyError, TypeError):
                    log_exception(logger, "status.relay.bad_message")
                    continue
                self._channel.publish(event)
        finally:
            pubsub.close()


_channel: StatusChannel | None = None
_relay: RedisStatusRelay | None = None
_lock = threading.RLock()


def get_status_channel() -> StatusChannel:
    global _channel  # noqa: PLW0603
    with _lock:
        if _channel is None:
            _channel = StatusChannel()
        return _channel


def get_status_relay() -> RedisStatusRelay | None:
    global _relay  # noqa: PLW0603
    if settings.status_channel_backend != "redis":
        return None
    with _lock:
        if _relay is None:
            _relay = RedisStatusRelay(get_status_channel())
        return _relay


def reset_status_channel() -> None:
    global _channel, _relay  # noqa: PLW0603
    with _lock:
        if _relay is not None:
            _relay.stop()
        if _channel is not None:
            _channel.close()
        _channel = None
        _relay = None


def publish_status(event: StatusEvent) -> None:
    relay = get_status_relay()
    if relay is not None:
        # The relay feeds the local channel, including this process's own events.
        try:
            relay.publish(event)
        except redis.RedisError:
            log_exception(
                logger,
                "status.publish.error",
                receipt_id=str(event.receipt_id),
                status=event.status.value,
            )
            get_status_channel().publish(event)
    else:
        get_status_channel().publish(event)
    log_event(
        logger,
        "status.published",
        receipt_id=str(event.receipt_id),
        status=event.status.value,
        attempt=event.attempt,
    )
