"""
Unit tests for the durable retry queue.

Tests the backoff schedule, result mapping, dead letters and persistence.
"""

import tempfile
import threading
from datetime import timedelta

import pytest

from relay_guard.config.loader import QueueConfig
from relay_guard.core.delivery import DeliveryResult, ErrorKind, normalize_result
from relay_guard.core.retry_queue import ProcessResult, RetryQueue, backoff_delay
from relay_guard.storage.repository import JsonFileStateStore


class Recorder:
    """Deliver callable returning queued results in order."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def __call__(self, submission):
        self.calls.append(submission)
        result = self.results.pop(0) if self.results else DeliveryResult.ok()
        if isinstance(result, Exception):
            raise result
        return result


def _fail(error="timeout"):
    return DeliveryResult.failed(ErrorKind.TRANSPORT, error)


class TestBackoffDelay:
    """Test the exponential backoff formula."""

    def test_doubles_from_base(self):
        assert backoff_delay(0) == timedelta(seconds=60)
        assert backoff_delay(1) == timedelta(seconds=120)
        assert backoff_delay(2) == timedelta(seconds=240)

    def test_capped_at_one_day(self):
        assert backoff_delay(11) == timedelta(days=1)
        assert backoff_delay(10000) == timedelta(days=1)

    def test_custom_base_and_cap(self):
        assert backoff_delay(3, base_seconds=5, max_seconds=30) == timedelta(seconds=30)

    def test_negative_rejected(self):
        with pytest.raises(ValueError, match="retry_count cannot be negative"):
            backoff_delay(-1)


class TestEnqueue:
    """Test adding submissions."""

    def test_first_retry_after_initial_delay(self, store, clock):
        queue = RetryQueue(store, clock=clock)

        submission = queue.enqueue({"url": "https://example.com", "content": "text"})

        assert submission.retry_count == 0
        assert submission.queued_at == clock.now()
        assert submission.next_retry == clock.now() + timedelta(seconds=60)
        assert queue.pending() == [submission]

    def test_id_from_payload(self, store, clock):
        queue = RetryQueue(store, clock=clock)
        assert queue.enqueue({"id": "abc"}).id == "abc"
        assert queue.enqueue({"id": "abc"}, submission_id="explicit").id == "explicit"

    def test_generated_ids_are_unique(self, store, clock):
        queue = RetryQueue(store, clock=clock)
        first = queue.enqueue({"url": "a"})
        second = queue.enqueue({"url": "a"})
        assert first.id != second.id

    def test_enqueue_persists(self, clock):
        with tempfile.TemporaryDirectory() as temp_dir:
            RetryQueue(JsonFileStateStore(temp_dir), clock=clock).enqueue({"id": "s1"})

            restarted = RetryQueue(JsonFileStateStore(temp_dir), clock=clock)
            assert [s.id for s in restarted.pending()] == ["s1"]


class TestProcessQueue:
    """Test retry cycles."""

    def test_backoff_schedule(self, store, clock):
        """Fail at 60s and 180s, succeed at 420s after enqueue."""
        queue = RetryQueue(store, clock=clock)
        start = clock.now()
        queue.enqueue({"id": "s1"})
        deliver = Recorder(_fail(), _fail(), DeliveryResult.ok())

        assert queue.process_queue(deliver).processed == 0

        clock.advance(60)
        result = queue.process_queue(deliver)
        assert result == ProcessResult(processed=1, succeeded=0, failed=1, remaining=1)
        [pending] = queue.pending()
        assert pending.retry_count == 1
        assert pending.next_retry == start + timedelta(seconds=180)

        clock.advance(119)
        assert queue.process_queue(deliver).processed == 0

        clock.advance(1)
        queue.process_queue(deliver)
        [pending] = queue.pending()
        assert pending.retry_count == 2
        assert pending.next_retry == start + timedelta(seconds=420)

        clock.advance(240)
        result = queue.process_queue(deliver)
        assert result == ProcessResult(processed=1, succeeded=1, failed=0, remaining=0)
        assert queue.pending() == []
        assert len(deliver.calls) == 3

    def test_delay_capped_after_many_failures(self, store, clock):
        queue = RetryQueue(store, clock=clock)
        queue.enqueue({"id": "s1"})
        deliver = Recorder(*[_fail() for _ in range(12)])

        delays = []
        for _ in range(12):
            clock.current = queue.pending()[0].next_retry
            queue.process_queue(deliver)
            delays.append((queue.pending()[0].next_retry - clock.now()).total_seconds())

        assert delays[:10] == [60 * 2 ** k for k in range(1, 11)]
        assert delays[10:] == [86400, 86400]
        assert queue.pending()[0].retry_count == 12

    def test_only_due_submissions_attempted(self, store, clock):
        queue = RetryQueue(store, clock=clock)
        queue.enqueue({"id": "early"})
        clock.advance(30)
        queue.enqueue({"id": "late"})
        clock.advance(30)
        deliver = Recorder()

        result = queue.process_queue(deliver)

        assert [s.id for s in deliver.calls] == ["early"]
        assert result.remaining == 1
        [late] = queue.pending()
        assert late.id == "late"
        assert late.retry_count == 0

    def test_submission_passed_to_deliver(self, store, clock):
        queue = RetryQueue(store, clock=clock)
        queue.enqueue({"id": "s1", "url": "https://example.com", "topic": "news"})
        clock.advance(60)
        deliver = Recorder()

        queue.process_queue(deliver)

        [submission] = deliver.calls
        assert submission.id == "s1"
        assert submission.payload["topic"] == "news"

    def test_gateway_result_mapping(self, store, clock):
        queue = RetryQueue(store, clock=clock)
        queue.enqueue({"id": "ok"})
        queue.enqueue({"id": "denied"})
        queue.enqueue({"id": "falsy"})
        clock.advance(60)
        deliver = Recorder({"ok": True}, {"err": {"Unauthorized": None}}, False)

        result = queue.process_queue(deliver)

        assert result.succeeded == 1
        assert result.failed == 2
        errors = {s.id: s.last_error for s in queue.pending()}
        assert errors == {"denied": '{"Unauthorized": null}', "falsy": "Unknown error"}

    def test_exception_counts_as_failure(self, store, clock):
        queue = RetryQueue(store, clock=clock)
        queue.enqueue({"id": "s1"})
        clock.advance(60)

        result = queue.process_queue(Recorder(ConnectionError("network down")))

        assert result.failed == 1
        [pending] = queue.pending()
        assert pending.last_error == "network down"
        assert pending.retry_count == 1

    def test_permanent_failures_retried_by_default(self, store, clock):
        queue = RetryQueue(store, clock=clock)
        queue.enqueue({"id": "s1"})
        clock.advance(60)

        result = queue.process_queue(Recorder(DeliveryResult.failed(ErrorKind.PERMANENT, "HTTP 422")))

        assert result.dead_lettered == 0
        assert result.remaining == 1
        assert queue.dead_letters() == []

    def test_permanent_failures_dead_lettered_when_enabled(self, store, clock):
        queue = RetryQueue(store, QueueConfig(drop_permanent_failures=True), clock=clock)
        queue.enqueue({"id": "bad"})
        queue.enqueue({"id": "flaky"})
        clock.advance(60)
        deliver = Recorder(DeliveryResult.failed(ErrorKind.PERMANENT, "HTTP 422"), _fail())

        result = queue.process_queue(deliver)

        assert result == ProcessResult(processed=2, succeeded=0, failed=2, remaining=1, dead_lettered=1)
        [dead] = queue.dead_letters()
        assert dead.id == "bad"
        assert dead.last_error == "HTTP 422"
        assert [s.id for s in queue.pending()] == ["flaky"]

    def test_empty_queue_records_last_processed(self, store, clock):
        queue = RetryQueue(store, clock=clock)

        assert queue.process_queue(Recorder()) == ProcessResult()
        assert queue.status().last_processed == clock.now()

    def test_custom_schedule(self, store, clock):
        config = QueueConfig(initial_delay_seconds=5, base_delay_seconds=10, max_delay_seconds=15)
        queue = RetryQueue(store, config, clock=clock)
        queue.enqueue({"id": "s1"})
        clock.advance(5)

        queue.process_queue(Recorder(_fail()))

        assert queue.pending()[0].next_retry == clock.now() + timedelta(seconds=15)


class TestQueueStatus:
    """Test the read-only queue snapshot."""

    def test_status(self, store, clock):
        queue = RetryQueue(store, clock=clock)
        first_queued = clock.now()
        queue.enqueue({"id": "a"})
        clock.advance(45)
        queue.enqueue({"id": "b"})
        clock.advance(15)

        status = queue.status()

        assert status.pending_count == 2
        assert status.due_count == 1
        assert status.oldest_queued_at == first_queued
        assert status.last_processed is None
        assert status.dead_letter_count == 0

    def test_empty_status(self, store, clock):
        status = RetryQueue(store, clock=clock).status()
        assert status.pending_count == 0
        assert status.oldest_queued_at is None


class TestDeliveryResultShapes:
    """Test every result shape a deliver callable may return."""

    def test_success_mapping(self):
        assert normalize_result({"success": True, "errorKind": None}).success

    def test_failure_mapping_keeps_error_kind(self):
        result = normalize_result({"success": False, "errorKind": "permanent", "error": "HTTP 422"})
        assert result == DeliveryResult.failed(ErrorKind.PERMANENT, "HTTP 422")

    def test_failure_mapping_with_enum_and_unknown_kind(self):
        assert normalize_result(
            {"success": False, "errorKind": ErrorKind.TRANSPORT}
        ) == DeliveryResult.failed(ErrorKind.TRANSPORT, "Unknown error")
        assert normalize_result(
            {"success": False, "errorKind": "mystery"}
        ).error_kind == ErrorKind.REJECTED

    def test_unit_ok_is_success(self):
        """The gateway's ``{"ok": null}`` reply counts as delivered."""
        assert normalize_result({"ok": None}).success

    def test_err_key_is_failure(self):
        assert not normalize_result({"ok": None, "err": "Unauthorized"}).success
        assert not normalize_result({}).success

    def test_success_mapping_removes_submission(self, store, clock):
        queue = RetryQueue(store, clock=clock)
        queue.enqueue({"id": "s1"})
        queue.enqueue({"id": "s2"})
        clock.advance(60)

        result = queue.process_queue(Recorder({"success": True, "errorKind": None}, {"ok": None}))

        assert result.succeeded == 2
        assert queue.pending() == []

    def test_permanent_mapping_dead_lettered(self, store, clock):
        queue = RetryQueue(store, QueueConfig(drop_permanent_failures=True), clock=clock)
        queue.enqueue({"id": "s1"})
        clock.advance(60)

        queue.process_queue(Recorder({"success": False, "errorKind": "permanent", "error": "HTTP 410"}))

        assert [s.last_error for s in queue.dead_letters()] == ["HTTP 410"]


class TestSubmissionIds:
    """Test id selection on enqueue."""

    def test_falsy_payload_id_kept(self, store, clock):
        queue = RetryQueue(store, clock=clock)
        assert queue.enqueue({"id": 0}).id == "0"


class TestConcurrency:
    """Test that concurrent callers never lose or duplicate entries."""

    def test_deliver_may_enqueue(self, store, clock):
        queue = RetryQueue(store, clock=clock)
        queue.enqueue({"id": "s1"})
        clock.advance(60)

        def deliver(submission):
            queue.enqueue({"id": "follow-up"})
            return DeliveryResult.ok()

        worker = threading.Thread(target=queue.process_queue, args=(deliver,))
        worker.start()
        worker.join(5)

        assert not worker.is_alive()
        [pending] = queue.pending()
        assert pending.id == "follow-up"
        assert pending.retry_count == 0

    def test_enqueue_during_processing_is_kept(self, store, clock):
        queue = RetryQueue(store, clock=clock)
        queue.enqueue({"id": "slow"})
        clock.advance(60)
        started = threading.Event()
        release = threading.Event()
        results = []

        def deliver(submission):
            started.set()
            release.wait(5)
            return _fail()

        worker = threading.Thread(target=lambda: results.append(queue.process_queue(deliver)))
        worker.start()
        assert started.wait(5)

        for i in range(20):
            queue.enqueue({"id": f"new-{i}"})
        release.set()
        worker.join(5)

        assert not worker.is_alive()
        assert results[0].processed == 1
        pending = {s.id: s for s in queue.pending()}
        assert set(pending) == {"slow"} | {f"new-{i}" for i in range(20)}
        assert pending["slow"].retry_count == 1
        assert all(pending[f"new-{i}"].retry_count == 0 for i in range(20))

    def test_parallel_enqueues(self, store, clock):
        queue = RetryQueue(store, clock=clock)

        def worker(n):
            for i in range(25):
                queue.enqueue({"id": f"{n}-{i}"})

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert len({s.id for s in queue.pending()}) == 200

    def test_parallel_cycles_retry_once(self, store, clock):
        queue = RetryQueue(store, clock=clock)
        for i in range(10):
            queue.enqueue({"id": f"s{i}"})
        clock.advance(60)
        deliver = Recorder(*[_fail() for _ in range(40)])

        threads = [threading.Thread(target=queue.process_queue, args=(deliver,)) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert len(deliver.calls) == 10
        assert sorted(s.retry_count for s in queue.pending()) == [1] * 10

    def test_duplicate_entries_each_get_their_outcome(self, store, clock):
        queue = RetryQueue(store, clock=clock)
        queue.enqueue({"id": "dup"})
        queue.enqueue({"id": "dup"})
        clock.advance(60)

        result = queue.process_queue(Recorder(DeliveryResult.ok(), _fail()))

        assert result == ProcessResult(processed=2, succeeded=1, failed=1, remaining=1)
        [pending] = queue.pending()
        assert pending.retry_count == 1
