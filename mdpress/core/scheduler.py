"""Cancellable delayed tasks used for debouncing."""
import heapq
import itertools
import logging
import threading
import time

logger = logging.getLogger(__name__)


class ScheduledTask:
    def __init__(self, callback, due=None, timer=None):
        self.callback = callback
        self.due = due
        self.timer = timer
        self._cancelled = False
        self._done = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def pending(self) -> bool:
        return not (self._cancelled or self._done)

    def cancel(self):
        self._cancelled = True
        if self.timer is not None:
            self.timer.cancel()

    def run(self):
        if not self.pending:
            return
        self._done = True
        try:
            self.callback()
        except Exception as e:
            logger.exception(f"Scheduled task failed: {e}")


class TimerScheduler:
    """Runs each task on its own threading.Timer."""

    def __init__(self):
        self.clock = time.time

    def schedule(self, delay, callback) -> ScheduledTask:
        task = ScheduledTask(callback, due=self.clock() + delay)
        task.timer = threading.Timer(delay, task.run)
        task.timer.daemon = True
        task.timer.start()
        return task


class ManualScheduler:
    """
    Deterministic scheduler driven by an explicit clock.

    Nothing runs until advance() (or run_due()) is called, which makes it the
    scheduler of choice for tests and for hosts that own their own event loop.
    """

    def __init__(self, start=0.0):
        self.now = float(start)
        self._queue = []
        self._seq = itertools.count()

    def clock(self):
        return self.now

    def schedule(self, delay, callback) -> ScheduledTask:
        task = ScheduledTask(callback, due=self.now + delay)
        heapq.heappush(self._queue, (task.due, next(self._seq), task))
        return task

    def pending(self):
        return [task for _, _, task in self._queue if task.pending]

    def run_due(self):
        ran = 0
        while self._queue and self._queue[0][0] <= self.now:
            _, _, task = heapq.heappop(self._queue)
            if task.pending:
                task.run()
                ran += 1
        return ran

    def advance(self, seconds):
        """Move the clock forward, firing due tasks in order at their due time."""
        target = self.now + seconds
        ran = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, task = heapq.heappop(self._queue)
            self.now = max(self.now, due)
            if task.pending:
                task.run()
                ran += 1
        self.now = target
        return ran
