"""Delayed-task scheduler: run callables after a delay, with cancellation.

Tasks sit in a heap keyed by fire time. One daemon thread waits for the
earliest task to become due and hands it to a worker pool. Tasks may
carry a key (the PR number) so that everything pending for a pull request
can be cancelled when its instance is removed.
"""

import heapq
import itertools
import logging
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Callable, Hashable, List, Set

LOG = logging.getLogger("prsite.scheduler")


class ScheduledTask:
    """A callable waiting in the scheduler."""

    def __init__(
        self,
        due: float,
        seq: int,
        func: Callable[..., Any],
        args: tuple,
        key: Hashable | None,
        accepted_at: float,
        name: str = "",
    ) -> None:
        self.due = due
        self.seq = seq
        self.func = func
        self.args = args
        self.key = key
        self.accepted_at = accepted_at
        self.name = name or getattr(func, "__name__", "task")
        self.cancelled = False

    def __lt__(self, other: "ScheduledTask") -> bool:
        return (self.due, self.seq) < (other.due, other.seq)

    def cancel(self) -> None:
        self.cancelled = True

    def __repr__(self) -> str:
        return f"ScheduledTask({self.name!r}, key={self.key!r}, due={self.due:.3f}, cancelled={self.cancelled})"


class DelayedScheduler:
    """Heap of delayed tasks driven by a background thread.

    clock must be monotonic; tests inject a fake clock and call
    run_pending() instead of starting the thread.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        executor: Executor | None = None,
        max_workers: int = 4,
    ) -> None:
        self._clock = clock
        self._heap: List[ScheduledTask] = []
        # Taken off the heap but not finished yet
        self._in_flight: Set[ScheduledTask] = set()
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._executor = executor
        self._max_workers = max_workers
        self._thread: threading.Thread | None = None
        self._stopped = False

    def now(self) -> float:
        return self._clock()

    def schedule(
        self,
        delay_seconds: float,
        func: Callable[..., Any],
        *args: Any,
        key: Hashable | None = None,
        accepted_at: float | None = None,
        name: str = "",
    ) -> ScheduledTask:
        """Run func(*args) no earlier than delay_seconds after accepted_at
        (defaults to now)."""
        accepted = self.now() if accepted_at is None else accepted_at
        task = ScheduledTask(
            due=accepted + max(delay_seconds, 0),
            seq=next(self._seq),
            func=func,
            args=args,
            key=key,
            accepted_at=accepted,
            name=name,
        )
        with self._cond:
            heapq.heappush(self._heap, task)
            self._cond.notify()
        LOG.debug("Scheduled %r in %.3fs", task, delay_seconds)
        return task

    def cancel_pending(self, key: Hashable, accepted_before: float | None = None) -> int:
        """Cancel pending and in-flight tasks with this key.

        An in-flight task that has already started is not interrupted; one
        still waiting for a worker is skipped. When accepted_before is
        given, only tasks accepted at or before that time are cancelled;
        later events stay scheduled.
        """
        count = 0
        with self._cond:
            for task in itertools.chain(self._heap, self._in_flight):
                if task.cancelled or task.key != key:
                    continue
                if accepted_before is not None and task.accepted_at > accepted_before:
                    continue
                task.cancel()
                count += 1
        if count:
            LOG.info("Cancelled %d pending task(s) for %s", count, key)
        return count

    def pending(self, key: Hashable | None = None) -> List[ScheduledTask]:
        """Tasks not yet run or cancelled (optionally only for key), earliest
        first."""
        with self._cond:
            tasks = [t for t in self._heap if not t.cancelled and (key is None or t.key == key)]
        return sorted(tasks)

    def _take_due(self, now: float) -> List[ScheduledTask]:
        due: List[ScheduledTask] = []
        with self._cond:
            while self._heap and self._heap[0].due <= now:
                task = heapq.heappop(self._heap)
                if not task.cancelled:
                    due.append(task)
                    self._in_flight.add(task)
        return due

    def _run(self, task: ScheduledTask) -> None:
        try:
            if task.cancelled:
                return
            task.func(*task.args)
        except Exception as e:
            LOG.exception("Task %s failed: %s", task.name, e)
        finally:
            with self._cond:
                self._in_flight.discard(task)

    def run_pending(self, now: float | None = None) -> int:
        """Run every due task in the calling thread; return how many ran."""
        tasks = self._take_due(self.now() if now is None else now)
        for task in tasks:
            self._run(task)
        return len(tasks)

    def _loop(self) -> None:
        while True:
            with self._cond:
                if self._stopped:
                    return
                live = [t for t in self._heap if not t.cancelled]
                timeout = None if not live else max(min(t.due for t in live) - self.now(), 0)
                if timeout is None or timeout > 0:
                    self._cond.wait(timeout)
                    continue
            for task in self._take_due(self.now()):
                self._executor.submit(self._run, task)

    def start(self) -> threading.Thread:
        """Start the dispatch thread (and a worker pool if none was given)."""
        if self._thread is not None:
            return self._thread
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="prsite-worker")
        self._thread = threading.Thread(target=self._loop, name="prsite-scheduler", daemon=True)
        self._thread.start()
        return self._thread

    def shutdown(self, wait: bool = True) -> None:
        """Stop dispatching; pending tasks are dropped."""
        with self._cond:
            self._stopped = True
            self._cond.notify_all()
        if self._thread is not None and wait:
            self._thread.join()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
