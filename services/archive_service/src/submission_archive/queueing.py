"""In-process job queue with visibility timeout and dead-lettering.

Mirrors the delivery semantics the worker is written against: a received
message is hidden for ``visibility_timeout`` seconds and reappears unless it
is acked; after ``max_receive_count`` deliveries it moves to
``dead_letters``.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from .errors import ValidationError
from .schemas import ArchiveJob

logger = logging.getLogger(__name__)


class JobQueue(Protocol):
    def enqueue(self, job: ArchiveJob) -> None: ...


@dataclass
class Delivery:
    message_id: str
    body: dict[str, Any]
    receive_count: int


@dataclass
class _Message:
    message_id: str
    body: dict[str, Any]
    receive_count: int = 0
    visible_at: float = 0.0
    sent_at: float = field(default_factory=time.time)


class LocalJobQueue:
    def __init__(
        self,
        visibility_timeout: float = 300.0,
        max_receive_count: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.visibility_timeout = visibility_timeout
        self.max_receive_count = max_receive_count
        self.clock = clock
        self.dead_letters: list[dict[str, Any]] = []
        self._messages: dict[str, _Message] = {}
        self._cond = threading.Condition()

    def enqueue(self, job: ArchiveJob) -> None:
        message = _Message(message_id=uuid.uuid4().hex, body=job.to_item(), visible_at=self.clock())
        with self._cond:
            self._messages[message.message_id] = message
            self._cond.notify()

    def receive(self, wait_seconds: float = 0.0) -> Delivery | None:
        deadline = time.monotonic() + wait_seconds
        with self._cond:
            while True:
                delivery = self._take_visible()
                if delivery is not None:
                    return delivery
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(timeout=min(remaining, 0.5))

    def _take_visible(self) -> Delivery | None:
        now = self.clock()
        for message in list(self._messages.values()):
            if message.visible_at > now:
                continue
            if message.receive_count >= self.max_receive_count:
                del self._messages[message.message_id]
                self.dead_letters.append(message.body)
                logger.error(
                    "Archive job moved to dead letter queue",
                    extra={"message_id": message.message_id, "receive_count": message.receive_count},
                )
                continue
            message.receive_count += 1
            message.visible_at = now + self.visibility_timeout
            return Delivery(message.message_id, dict(message.body), message.receive_count)
        return None

    def ack(self, message_id: str) -> None:
        with self._cond:
            self._messages.pop(message_id, None)

    def __len__(self) -> int:
        with self._cond:
            return len(self._messages)


class QueueConsumer:
    """Feeds queued archive jobs to a handler, acking only on success."""

    def __init__(self, queue: LocalJobQueue, handler: Callable[[ArchiveJob], None], poll_seconds: float = 1.0):
        self.queue = queue
        self.handler = handler
        self.poll_seconds = poll_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self, wait_seconds: float = 0.0) -> bool:
        delivery = self.queue.receive(wait_seconds)
        if delivery is None:
            return False

        context = {"message_id": delivery.message_id, "receive_count": delivery.receive_count}
        try:
            job = ArchiveJob.from_message(delivery.body)
        except ValidationError:
            logger.warning("Archive queue message missing submissionId", extra=context)
            self.queue.ack(delivery.message_id)
            return True

        try:
            self.handler(job)
        except Exception:
            # left unacked: it becomes visible again after the visibility timeout
            logger.exception("Archive job failed, awaiting redelivery", extra={**context, "submission_id": job.submission_id})
            return True

        self.queue.ack(delivery.message_id)
        return True

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="archive-consumer", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            self.run_once(self.poll_seconds)
