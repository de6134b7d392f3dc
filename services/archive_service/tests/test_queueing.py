import pytest

from submission_archive.queueing import LocalJobQueue, QueueConsumer
from submission_archive.schemas import ArchiveJob


class ManualClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def manual_clock():
    return ManualClock()


@pytest.fixture
def queue(manual_clock):
    return LocalJobQueue(visibility_timeout=30.0, max_receive_count=3, clock=manual_clock)


def test_received_message_is_hidden_until_timeout(queue, manual_clock):
    queue.enqueue(ArchiveJob(submission_id="sub-1", requested_at="2026-01-01T00:00:00.000Z"))

    first = queue.receive()
    assert first.body["submissionId"] == "sub-1"
    assert first.receive_count == 1
    assert queue.receive() is None

    manual_clock.now = 31.0
    again = queue.receive()
    assert again.message_id == first.message_id
    assert again.receive_count == 2


def test_ack_removes_message(queue, manual_clock):
    queue.enqueue(ArchiveJob(submission_id="sub-1"))
    delivery = queue.receive()

    queue.ack(delivery.message_id)
    manual_clock.now = 100.0

    assert queue.receive() is None
    assert len(queue) == 0


def test_message_dead_letters_after_max_receives(queue, manual_clock):
    queue.enqueue(ArchiveJob(submission_id="sub-1"))

    for attempt in range(3):
        manual_clock.now = attempt * 31.0
        assert queue.receive() is not None

    manual_clock.now = 200.0
    assert queue.receive() is None
    assert queue.dead_letters == [{"submissionId": "sub-1", "requestedAt": None, "downloadBaseUrl": None}]


def test_consumer_acks_only_successful_jobs(queue, manual_clock):
    handled = []

    def handler(job):
        handled.append(job.submission_id)
        if job.submission_id == "bad":
            raise RuntimeError("boom")

    consumer = QueueConsumer(queue, handler)
    queue.enqueue(ArchiveJob(submission_id="good"))
    queue.enqueue(ArchiveJob(submission_id="bad"))

    assert consumer.run_once() is True
    assert consumer.run_once() is True
    assert consumer.run_once() is False
    assert handled == ["good", "bad"]
    assert len(queue) == 1

    manual_clock.now = 31.0
    assert consumer.run_once() is True
    assert handled == ["good", "bad", "bad"]


def test_consumer_drops_malformed_messages(queue):
    queue.enqueue(ArchiveJob(submission_id="x"))
    delivery_id = next(iter(queue._messages))
    queue._messages[delivery_id].body = {"requestedAt": "2026-01-01T00:00:00Z"}
    handled = []

    assert QueueConsumer(queue, handled.append).run_once() is True
    assert handled == []
    assert len(queue) == 0
