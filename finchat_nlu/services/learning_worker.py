"""
Background worker for deferred learning updates.

Pattern and feedback updates are scheduled here so they never add latency to a chat
turn. Tasks are keyed: scheduling a key that is already pending replaces the pending
task and restarts its delay, which debounces bursts of feedback for one item.
"""

import random
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..utils.config import config
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class LearningTask:
    """A unit of deferred work."""
    key: str
    fn: Callable[..., Any]
    args: tuple = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)
    due_at: float = 0.0
    attempts: int = 0
    last_error: Optional[str] = None


class LearningWorker:
    """Keyed, debounced delayed task queue drained by a daemon thread."""

    def __init__(self,
                 retry_attempts: Optional[int] = None,
                 retry_delay: Optional[float] = None,
                 autostart: bool = True,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the worker.

        Args:
            retry_attempts: Attempts per task before it is recorded as failed
            retry_delay: Base delay between attempts (doubled each retry)
            autostart: Start the thread on the first scheduled task
            clock: Monotonic clock
        """
        self.retry_attempts = retry_attempts or config.learning.worker_retry_attempts
        self.retry_delay = retry_delay if retry_delay is not None else config.learning.worker_retry_delay
        self.autostart = autostart
        self._clock = clock

        self._tasks: Dict[str, LearningTask] = {}
        self._running_keys: set = set()
        self._condition = threading.Condition()
        self._thread: Optional[threading.Thread] = None
        self._stopping = False

        self.completed_count = 0
        self.failed_tasks: List[LearningTask] = []

    def start(self) -> None:
        """Start the worker thread if it is not running."""
        with self._condition:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stopping = False
            self._thread = threading.Thread(target=self._run, name='finchat-learning-worker', daemon=True)
            self._thread.start()
        logger.info('Learning worker started')

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the worker thread; pending tasks stay queued."""
        with self._condition:
            self._stopping = True
            self._condition.notify_all()
            thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None
        logger.info(f'Learning worker stopped with {self.pending_count} pending tasks')

    def schedule(self, key: str, fn: Callable[..., Any], delay: float = 0.0, *args, **kwargs) -> str:
        """
        Schedule fn to run after delay seconds, replacing any pending task with the same key.

        Returns:
            The task key
        """
        with self._condition:
            replaced = key in self._tasks
            self._tasks[key] = LearningTask(key=key, fn=fn, args=args, kwargs=kwargs, due_at=self._clock() + max(delay, 0.0))
            self._condition.notify_all()

        if replaced:
            logger.debug(f'Debounced learning task {key} ({delay:.1f}s)')
        else:
            logger.debug(f'Scheduled learning task {key} ({delay:.1f}s)')

        if self.autostart:
            self.start()
        return key

    def submit(self, fn: Callable[..., Any], *args, **kwargs) -> str:
        """Run fn as soon as possible under a fresh key."""
        return self.schedule(f'task-{uuid.uuid4().hex}', fn, 0.0, *args, **kwargs)

    @property
    def pending_count(self) -> int:
        with self._condition:
            return len(self._tasks)

    def is_pending(self, key: str) -> bool:
        with self._condition:
            return key in self._tasks

    def _take_due(self, now: float, ignore_delay: bool = False) -> List[LearningTask]:
        due = [task for task in self._tasks.values() if (ignore_delay or task.due_at <= now) and task.key not in self._running_keys]
        due.sort(key=lambda task: task.due_at)
        for task in due:
            del self._tasks[task.key]
            self._running_keys.add(task.key)
        return due

    def _execute(self, task: LearningTask) -> None:
        task.attempts += 1
        try:
            task.fn(*task.args, **task.kwargs)
            self.completed_count += 1
            logger.debug(f'Learning task {task.key} completed')

        except Exception as e:
            task.last_error = str(e)
            if task.attempts < self.retry_attempts:
                delay = self.retry_delay * (2**(task.attempts - 1)) + random.uniform(0, 0.1 * self.retry_delay)
                logger.warning(f'Learning task {task.key} failed (attempt {task.attempts}/{self.retry_attempts}), '
                               f'retrying in {delay:.2f}s: {e}')
                with self._condition:
                    # A newer task for the same key supersedes the retry
                    if task.key not in self._tasks:
                        task.due_at = self._clock() + delay
                        self._tasks[task.key] = task
                        self._condition.notify_all()
            else:
                logger.error(f'Learning task {task.key} failed after {task.attempts} attempts: {e}')
                self.failed_tasks.append(task)

        finally:
            with self._condition:
                self._running_keys.discard(task.key)

    def run_pending(self, ignore_delay: bool = False) -> int:
        """
        Run every task that is due in the calling thread.

        Args:
            ignore_delay: Run tasks whose delay has not elapsed yet

        Returns:
            Number of tasks executed
        """
        with self._condition:
            due = self._take_due(self._clock(), ignore_delay)
        for task in due:
            self._execute(task)
        return len(due)

    def drain(self, max_rounds: int = 10) -> int:
        """Run all queued tasks now, including retries, up to max_rounds passes."""
        executed = 0
        for _ in range(max_rounds):
            ran = self.run_pending(ignore_delay=True)
            executed += ran
            if ran == 0:
                break
        return executed

    def _run(self) -> None:
        while True:
            with self._condition:
                if self._stopping:
                    return
                now = self._clock()
                waiting = [task.due_at for task in self._tasks.values() if task.key not in self._running_keys]
                next_due = min(waiting) if waiting else None
                if next_due is None or next_due > now:
                    self._condition.wait(timeout=None if next_due is None else next_due - now)
                    continue
                due = self._take_due(now)

            for task in due:
                self._execute(task)
