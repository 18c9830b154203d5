from unittest.mock import Mock

import pytest

from paygate.errors import InvalidTransition, ProviderRejected, ProviderUnavailable
from paygate.workers.retry_queue import RetryQueue, backoff_delay


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()


def _queue(clock, handler=None, **kwargs):
    options = {"max_attempts": 3, "backoff_base": 2, "backoff_max": 60, "maxsize": 10}
    options.update(kwargs)
    return RetryQueue(handler or Mock(), clock=clock, **options)


def test_backoff_delay_grows_and_caps():
    assert [backoff_delay(n, 2, 30) for n in range(1, 7)] == [2, 4, 8, 16, 30, 30]
    assert backoff_delay(0, 2, 30) == 2


def test_job_runs_only_when_due(clock):
    handler = Mock()
    queue = _queue(clock, handler)
    queue.enqueue("txn_1")

    assert queue.run_pending() == 0
    clock.advance(2)
    assert queue.run_pending() == 1

    handler.assert_called_once_with("txn_1", 1)
    assert len(queue) == 0


def test_unavailable_provider_reschedules_with_backoff(clock):
    """Test a transient failure queues the next attempt with a longer delay"""
    handler = Mock(side_effect=[ProviderUnavailable("down"), None])
    queue = _queue(clock, handler)
    queue.enqueue("txn_1", 1)

    clock.advance(2)
    queue.run_pending()
    assert len(queue) == 1

    clock.advance(3)
    assert queue.run_pending() == 0
    clock.advance(1)
    assert queue.run_pending() == 1

    assert [c.args for c in handler.call_args_list] == [("txn_1", 1), ("txn_1", 2)]


def test_exhaustion_calls_handler(clock):
    handler = Mock(side_effect=ProviderUnavailable("down"))
    on_exhausted = Mock()
    queue = _queue(clock, handler, on_exhausted=on_exhausted)
    queue.enqueue("txn_1")

    for _ in range(3):
        queue.drain()

    assert handler.call_count == 3
    on_exhausted.assert_called_once_with("txn_1", 3)
    assert len(queue) == 0


@pytest.mark.parametrize("error", [ProviderRejected("declined"), InvalidTransition("moved on")])
def test_non_retryable_error_is_dropped(clock, error):
    """Test errors flagged as not retryable are neither rescheduled nor exhausted"""
    handler = Mock(side_effect=error)
    on_exhausted = Mock()
    queue = _queue(clock, handler, on_exhausted=on_exhausted)
    queue.enqueue("txn_1")

    queue.drain()

    handler.assert_called_once_with("txn_1", 1)
    assert len(queue) == 0
    on_exhausted.assert_not_called()


def test_unexpected_error_is_retried(clock):
    handler = Mock(side_effect=[RuntimeError("boom"), None])
    queue = _queue(clock, handler)
    queue.enqueue("txn_1")

    queue.drain()
    queue.drain()

    assert handler.call_count == 2


def test_full_queue_rejects(clock):
    queue = _queue(clock, maxsize=2)

    assert queue.enqueue("txn_1")
    assert queue.enqueue("txn_2")
    assert not queue.enqueue("txn_3")
    assert len(queue) == 2


def test_full_queue_exhausts_failed_job(clock):
    on_exhausted = Mock()
    queue = _queue(clock, on_exhausted=on_exhausted, maxsize=1)

    def handler(transaction_id, attempt):
        queue.enqueue("txn_2", delay=100)
        raise ProviderUnavailable("down")

    queue.handler = handler
    queue.enqueue("txn_1", delay=0)
    queue.run_pending()

    on_exhausted.assert_called_once_with("txn_1", 1)


def test_jobs_run_in_due_order(clock):
    handler = Mock()
    queue = _queue(clock, handler)
    queue.enqueue("late", delay=10)
    queue.enqueue("early", delay=1)

    clock.advance(10)
    queue.run_pending()

    assert [c.args[0] for c in handler.call_args_list] == ["early", "late"]


def test_sweep_runs_on_interval(clock):
    sweeper = Mock()
    queue = _queue(clock, sweeper=sweeper, sweep_interval=60)

    assert queue.sweep_if_due()
    clock.advance(30)
    assert not queue.sweep_if_due()
    clock.advance(30)
    assert queue.sweep_if_due()
    assert sweeper.call_count == 2


def test_sweep_failure_does_not_stop_tick(clock):
    handler = Mock()
    queue = _queue(clock, handler, sweeper=Mock(side_effect=RuntimeError("db down")))
    queue.enqueue("txn_1", delay=0)

    queue.tick()

    handler.assert_called_once_with("txn_1", 1)


def test_start_and_stop_thread(clock):
    queue = _queue(clock, tick_seconds=0.01)

    queue.start()
    assert queue.running
    queue.stop()
    assert not queue.running
