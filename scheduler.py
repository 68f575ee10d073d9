import logging
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

DEFAULT_TASK_TIMEOUT = timedelta(seconds=30)


class TaskContext:
    """Cancellation handle passed to every task run.

    A run is cancelled when the scheduler stops or its deadline passes;
    handlers check ``cancelled`` between units of work.
    """

    def __init__(
        self, stop_event: threading.Event, timeout: Optional[timedelta] = None
    ) -> None:
        self._stop_event = stop_event
        self._deadline = (
            time.monotonic() + timeout.total_seconds() if timeout is not None else None
        )

    @property
    def cancelled(self) -> bool:
        if self._stop_event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if cancelled meanwhile."""
        return self._stop_event.wait(seconds) or self.cancelled


@dataclass
class CronTask:
    id: str
    name: str
    schedule: timedelta
    handler: Callable[[TaskContext], object]
    run_immediately: bool = False
    timeout: Optional[timedelta] = DEFAULT_TASK_TIMEOUT


class CronScheduler:
    def __init__(self, scheduler: Optional[BackgroundScheduler] = None) -> None:
        settings = get_settings()
        self.scheduler = scheduler or BackgroundScheduler(timezone=settings.timezone)
        self.tasks: dict[str, CronTask] = {}
        self._stop_event = threading.Event()
        self._started = False

    def register(self, task: CronTask) -> None:
        if task.handler is None or not callable(task.handler):
            raise ValueError(f"Task {task.id} has no handler")
        if task.schedule <= timedelta(0):
            raise ValueError(f"Task {task.id} schedule must be positive")
        if task.id in self.tasks:
            raise ValueError(f"Task {task.id} already registered")
        self.tasks[task.id] = task
        if self._started:
            self._add_job(task)

    def _execute(self, task_id: str, source: str = "manual") -> None:
        task = self.tasks[task_id]
        if self._stop_event.is_set():
            return
        context = TaskContext(self._stop_event, task.timeout)
        logger.info(f"cron_run: task={task.id} source={source}")
        started = time.perf_counter()
        try:
            task.handler(context)
        except Exception:
            logger.exception(f"cron_run_failed: task={task.id} source={source}")
            return
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(f"cron_run_done: task={task.id} source={source} duration_ms={elapsed_ms}")

    def _add_job(self, task: CronTask) -> None:
        self.scheduler.add_job(
            self._execute,
            IntervalTrigger(seconds=task.schedule.total_seconds()),
            args=[task.id, "interval"],
            id=task.id,
            name=task.name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )

    def run_now(self, task_id: str) -> None:
        self._execute(task_id, "manual")

    def start(self) -> None:
        self._stop_event.clear()
        for task in self.tasks.values():
            if task.run_immediately:
                self._execute(task.id, "startup")

        for task in self.tasks.values():
            self._add_job(task)

        self.scheduler.start()
        self._started = True
        logger.info(f"Scheduler started with tasks {sorted(self.tasks)}")

    def stop(self) -> None:
        self._stop_event.set()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            logger.info("Scheduler stopped")
        self._started = False
