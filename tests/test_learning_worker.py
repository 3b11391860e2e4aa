"""Tests for the keyed, debounced background worker."""

import threading

from finchat_nlu.services.learning_worker import LearningWorker


class FakeClock:

    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def test_delayed_task_waits_for_due_time():
    clock = FakeClock()
    worker = LearningWorker(retry_attempts=1, retry_delay=0.0, autostart=False, clock=clock)
    calls = []
    worker.schedule('k', calls.append, 10.0, 'done')

    assert worker.run_pending() == 0
    clock.now += 10.0
    assert worker.run_pending() == 1
    assert calls == ['done']
    assert worker.pending_count == 0


def test_schedule_debounces_by_key():
    clock = FakeClock()
    worker = LearningWorker(retry_attempts=1, retry_delay=0.0, autostart=False, clock=clock)
    calls = []
    worker.schedule('feedback:1', calls.append, 5.0, 'first')
    clock.now += 4.0
    worker.schedule('feedback:1', calls.append, 5.0, 'second')

    clock.now += 2.0
    assert worker.run_pending() == 0
    assert worker.is_pending('feedback:1')

    clock.now += 3.0
    worker.run_pending()
    assert calls == ['second']


def test_submit_uses_fresh_keys():
    worker = LearningWorker(autostart=False)
    calls = []
    worker.submit(calls.append, 1)
    worker.submit(calls.append, 2)

    assert worker.pending_count == 2
    assert worker.drain() == 2
    assert sorted(calls) == [1, 2]


def test_failed_task_is_retried_then_recorded():
    worker = LearningWorker(retry_attempts=3, retry_delay=0.0, autostart=False)
    attempts = []

    def always_fails():
        attempts.append(1)
        raise RuntimeError('store down')

    worker.submit(always_fails)
    worker.drain()

    assert len(attempts) == 3
    assert len(worker.failed_tasks) == 1
    assert worker.failed_tasks[0].last_error == 'store down'
    assert worker.pending_count == 0


def test_transient_failure_recovers():
    worker = LearningWorker(retry_attempts=3, retry_delay=0.0, autostart=False)
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError('timeout')

    worker.submit(flaky)
    worker.drain()

    assert len(attempts) == 2
    assert worker.completed_count == 1
    assert worker.failed_tasks == []


def test_thread_runs_tasks():
    worker = LearningWorker(retry_attempts=1, retry_delay=0.0)
    done = threading.Event()
    try:
        worker.submit(done.set)
        assert done.wait(timeout=5)
    finally:
        worker.stop()
