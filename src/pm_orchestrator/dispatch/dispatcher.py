"""Queue dispatcher: claims tasks, orchestrates them and persists the outcome."""

from __future__ import annotations

import logging
import os
import signal
import socket
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import TypeVar

from pm_orchestrator.dispatch.errors import PlanError
from pm_orchestrator.dispatch.models import PlanStatus, PlanTaskStatus, PlanView
from pm_orchestrator.dispatch.plans import PlanService
from pm_orchestrator.orchestration.orchestrator import (
    OrchestrationResult,
    OrchestrationStatus,
    TaskOrchestrator,
)
from pm_orchestrator.queue.errors import InvalidTransitionError, StoreUnavailableError
from pm_orchestrator.queue.models import TaskStatus, TaskView
from pm_orchestrator.queue.store import QueueStore

logger = logging.getLogger(__name__)

_SLEEP_STEP_SECONDS = 0.1

T = TypeVar("T")


@dataclass(slots=True)
class DispatcherRunSummary:
    """Aggregate dispatcher counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    awaiting_response: int = 0
    cancelled: int = 0
    idle_polls: int = 0
    store_errors: int = 0

    def add(self, other: DispatcherRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.awaiting_response += other.awaiting_response
        self.cancelled += other.cancelled
        self.idle_polls += other.idle_polls
        self.store_errors += other.store_errors

    def count(self, status: TaskStatus) -> None:
        self.processed += 1
        if status == TaskStatus.COMPLETE:
            self.completed += 1
        elif status == TaskStatus.ERROR:
            self.failed += 1
        elif status == TaskStatus.AWAITING_RESPONSE:
            self.awaiting_response += 1
        elif status == TaskStatus.CANCELLED:
            self.cancelled += 1


class _Heartbeat:
    """Refreshes ``heartbeat_at`` and notices external cancellation."""

    def __init__(self, store: QueueStore, task_id: str, interval_seconds: float) -> None:
        self.store = store
        self.task_id = task_id
        self.interval_seconds = interval_seconds
        self.cancelled = threading.Event()
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"pm-heartbeat-{task_id[:8]}",
            daemon=True,
        )

    def __enter__(self) -> _Heartbeat:
        self._thread.start()
        return self

    def __exit__(self, *_: object) -> None:
        self._stop.set()
        self._thread.join(timeout=max(1.0, self.interval_seconds * 2))

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                if self.store.heartbeat(self.task_id):
                    continue
                if self.store.get(self.task_id).status == TaskStatus.CANCELLED:
                    logger.info("Task %s was cancelled while running", self.task_id)
                    self.cancelled.set()
                    return
            except StoreUnavailableError as error:
                logger.warning("Heartbeat for task %s failed: %s", self.task_id, error)


class QueueDispatcher:
    """Sequential dispatcher for one namespace."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: QueueStore,
        orchestrator: TaskOrchestrator,
        namespace: str = "default",
        worker_id: str | None = None,
        poll_interval_seconds: float = 1.0,
        heartbeat_interval_seconds: float = 5.0,
        stale_after_seconds: int = 0,
        store_retry_initial_seconds: float = 0.5,
        store_retry_max_seconds: float = 30.0,
        plan_service: PlanService | None = None,
        max_parallel_tasks: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.namespace = namespace
        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}"
        self.poll_interval_seconds = poll_interval_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self.store_retry_initial_seconds = store_retry_initial_seconds
        self.store_retry_max_seconds = store_retry_max_seconds
        self.plan_service = plan_service
        self.max_parallel_tasks = max(1, max_parallel_tasks)
        self._sleep = sleep
        self._recovered = False
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self, *, signal_name: str = "manual") -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.info("Dispatcher %s stopping (%s)", self.worker_id, signal_name)

    def recover(self) -> list[str]:
        """Requeue RUNNING tasks left behind by a previous session."""

        recovered = self._with_store_retry(lambda: self.store.recover_on_startup(self.namespace))
        self._recovered = True
        return recovered or []

    def run_once(self) -> DispatcherRunSummary:
        """Process at most one task from the queue."""

        summary = DispatcherRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary
        if not self._recovered:
            self.recover()
        self._recover_stale()

        task = self._with_store_retry(
            lambda: self.store.claim(self.namespace, worker_id=self.worker_id),
            summary=summary,
        )
        if task is None:
            summary.idle_polls = 1
            return summary

        final = self.process(task)
        summary.count(final.status)
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> DispatcherRunSummary:
        """Run until the queue is idle, ``max_tasks`` is reached or a stop signal arrives."""

        aggregate = DispatcherRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def respond(self, task_id: str, answer: str) -> TaskView:
        """Answer a suspended task and run it to its next stored state."""

        task = self.store.respond(task_id, answer)
        if task.clarification is not None:
            self.orchestrator.clarification_engine.record_answer(task.clarification.question, answer)
        logger.info("Task %s resumed with an answer", task_id)
        return self.process(task)

    def process(self, task: TaskView) -> TaskView:
        """Orchestrate a RUNNING task and persist its outcome."""

        with _Heartbeat(self.store, task.task_id, self.heartbeat_interval_seconds) as heartbeat:
            try:
                result = self.orchestrator.orchestrate(
                    task,
                    cancel_requested=heartbeat.cancelled.is_set,
                )
            except Exception as error:  # noqa: BLE001
                logger.exception("Orchestration of task %s failed", task.task_id)
                return self._persist_failure(task, error)
        return self._persist(task, result)

    def run_plan(self, plan_id: str) -> PlanView:
        """Execute a dispatched plan's tasks on a bounded pool until none are runnable."""

        if self.plan_service is None:
            raise PlanError("run_plan requires a plan service.")
        plan = self.plan_service.refresh(plan_id)
        if plan.status != PlanStatus.RUNNING:
            raise PlanError(f"Plan {plan_id} is not running (status {plan.status.value}).")

        in_flight: dict[str, Future[TaskView]] = {}
        with ThreadPoolExecutor(max_workers=self.max_parallel_tasks, thread_name_prefix="pm-plan") as pool:
            while True:
                for item in plan.tasks:
                    run_id = item.linked_run_id
                    if (
                        self._stop_requested
                        or item.status != PlanTaskStatus.QUEUED
                        or run_id is None
                        or run_id in in_flight
                    ):
                        continue
                    in_flight[run_id] = pool.submit(self._run_plan_task, run_id)
                pending = [future for future in in_flight.values() if not future.done()]
                if not pending:
                    plan = self.plan_service.refresh(plan_id)
                    if self._stop_requested or not any(
                        item.status == PlanTaskStatus.QUEUED and item.linked_run_id not in in_flight
                        for item in plan.tasks
                    ):
                        break
                    continue
                wait(pending, return_when=FIRST_COMPLETED)
                for future in in_flight.values():
                    if future.done():
                        future.result()
                plan = self.plan_service.refresh(plan_id)
        return self.plan_service.refresh(plan_id)

    def _run_plan_task(self, task_id: str) -> TaskView:
        task = self._with_store_retry(
            lambda: self.store.claim(self.namespace, worker_id=self.worker_id, task_id=task_id),
        )
        if task is None:
            return self.store.get(task_id)
        return self.process(task)

    def _persist(self, task: TaskView, result: OrchestrationResult) -> TaskView:
        for event in result.events:
            self.store.add_event(task.task_id, event.event_type.value.lower(), event.to_details())
        try:
            if result.status == OrchestrationStatus.COMPLETE:
                final = self.store.update_status(task.task_id, TaskStatus.COMPLETE, output=result.output)
            elif result.status == OrchestrationStatus.AWAITING_RESPONSE and result.clarification is not None:
                final = self.store.set_awaiting_response(
                    task.task_id,
                    result.clarification,
                    output=result.output or None,
                )
            elif result.status == OrchestrationStatus.CANCELLED:
                final = self._ensure_cancelled(task.task_id)
            else:
                final = self.store.update_status(
                    task.task_id,
                    TaskStatus.ERROR,
                    output=result.output or None,
                    error_message=result.error_message or "Task failed",
                    failure_type=result.failure_type,
                )
        except InvalidTransitionError as error:
            current = self.store.get(task.task_id)
            logger.warning(
                "Task %s changed concurrently (now %s); dropped %s result: %s",
                task.task_id,
                current.status.value,
                result.status.value,
                error,
            )
            return current
        logger.info("Task %s finished orchestration: %s", task.task_id, final.status.value)
        return final

    def _persist_failure(self, task: TaskView, error: Exception) -> TaskView:
        try:
            return self.store.update_status(
                task.task_id,
                TaskStatus.ERROR,
                error_message=f"Orchestration failed: {error}",
                failure_type="UNKNOWN",
            )
        except InvalidTransitionError:
            return self.store.get(task.task_id)

    def _ensure_cancelled(self, task_id: str) -> TaskView:
        current = self.store.get(task_id)
        if current.status == TaskStatus.CANCELLED:
            return current
        return self.store.cancel(task_id)

    def _recover_stale(self) -> None:
        if self.stale_after_seconds <= 0:
            return
        self._with_store_retry(
            lambda: self.store.recover_stale_tasks(
                self.namespace,
                stale_after=timedelta(seconds=self.stale_after_seconds),
            ),
        )

    def _with_store_retry(
        self,
        operation: Callable[[], T],
        *,
        summary: DispatcherRunSummary | None = None,
    ) -> T | None:
        """Repeat ``operation`` with exponential backoff while the store is unavailable."""

        attempt = 0
        while True:
            try:
                return operation()
            except StoreUnavailableError as error:
                if summary is not None:
                    summary.store_errors += 1
                delay = min(
                    self.store_retry_initial_seconds * (2**attempt),
                    self.store_retry_max_seconds,
                )
                attempt += 1
                logger.warning(
                    "Queue store unavailable (attempt %d): %s; retrying in %.1fs",
                    attempt,
                    error,
                    delay,
                )
                self._sleep_with_stop(delay)
                if self._stop_requested:
                    return None

    def _sleep_with_stop(self, seconds: float) -> None:
        remaining = max(0.0, seconds)
        while remaining > 0 and not self._stop_requested:
            step = min(_SLEEP_STEP_SECONDS, remaining)
            self._sleep(step)
            remaining -= step

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
