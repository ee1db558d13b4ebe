"""Scheduler that projects workable tickets into an in-memory dispatch queue."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime

from task_orchestrator.errors import (
    InvalidTransitionError,
    TicketConflictError,
    TicketNotFoundError,
)
from task_orchestrator.scheduler.analysis import analyze_cycles, format_cycle_report
from task_orchestrator.scheduler.graph import DependencyGraph
from task_orchestrator.scheduler.models import QueueStatus, Task, TaskFilter, TaskStatus
from task_orchestrator.storage.common import utc_now
from task_orchestrator.tickets.models import (
    WORKABLE_STATUSES,
    TicketCreate,
    TicketPatch,
    TicketStatus,
    TicketView,
)
from task_orchestrator.tickets.repository import TicketRepository

logger = logging.getLogger(__name__)

DEFAULT_TASK_TIMEOUT_SECONDS = 30.0
ESCALATION_TITLE_PREFIX = "P1 BLOCKED: "
_P1_TITLE_PREFIXES = ("p1 blocked", "[p1]", "p1:")


class OrchestratorService:
    """Own the task queue, the in-flight set and idle escalation.

    One instance is constructed per process and passed to every consumer.
    Queue mutations happen under ``_lock``; store calls never do, and the
    ticket version compare-and-swap is what serializes concurrent claims.
    """

    def __init__(
        self,
        store: TicketRepository,
        *,
        task_timeout_seconds: float = DEFAULT_TASK_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        auto_refresh: bool = True,
    ) -> None:
        if task_timeout_seconds <= 0:
            raise ValueError("task_timeout_seconds must be > 0.")
        self.store = store
        self.task_timeout_seconds = task_timeout_seconds
        self.clock = clock
        self.auto_refresh = auto_refresh

        self._lock = threading.RLock()
        self._queue: list[Task] = []
        self._in_flight: dict[str, Task] = {}
        self._escalated: list[Task] = []
        self._claiming: set[str] = set()
        self._needs_refresh = False
        self._last_picked_title: str | None = None
        self._unsubscribe: Callable[[], None] | None = None

    def initialize(self) -> None:
        """Load open and in-progress tickets as pending tasks, in ticket order.

        A store failure leaves the queue empty; this method never raises.
        """

        try:
            tickets = self.store.list_tickets(statuses=WORKABLE_STATUSES)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to load tickets into the task queue")
            tickets = []

        with self._lock:
            self._queue = [Task.from_ticket(ticket) for ticket in tickets]
            self._in_flight.clear()
            self._escalated.clear()
            self._needs_refresh = False
        logger.info("Loaded %d tasks from tickets", len(tickets))

        if self.auto_refresh and self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self._on_ticket_changed)

    def shutdown(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def get_next_task(self, task_filter: TaskFilter | str = TaskFilter.READY) -> Task | None:
        """Atomically pick and claim the next dispatchable task.

        A version conflict puts the task back at the front of the queue and
        yields ``None`` for this call; the queue is reconciled with the store
        before the next pick.
        """

        task_filter = TaskFilter(task_filter)
        self.check_for_blocked_tasks()
        if self._needs_refresh:
            self.refresh_queue_from_tickets()

        if task_filter is TaskFilter.BLOCKED:
            with self._lock:
                return self._escalated[0].snapshot() if self._escalated else None

        done_ids: set[str] = set()
        if task_filter is TaskFilter.READY:
            done_ids = self._done_dependency_ids()

        with self._lock:
            task = self._take_next(task_filter=task_filter, done_ids=done_ids)
            if task is None:
                waiting = len(self._queue)
            else:
                self._claiming.add(task.id)
        if task is None:
            if waiting and task_filter is TaskFilter.READY:
                self._log_withheld_tasks()
            return None

        try:
            ticket = self.store.update(
                task.ticket_id,
                TicketPatch(status=TicketStatus.IN_PROGRESS),
                expected_version=task.version,
            )
        except TicketConflictError as error:
            logger.info(
                "Task %s already claimed or modified (expected v%d, found v%d)",
                task.id,
                error.expected_version,
                error.actual_version,
            )
            with self._lock:
                self._claiming.discard(task.id)
                self._queue.insert(0, task)
                self._needs_refresh = True
            return None
        except (TicketNotFoundError, InvalidTransitionError) as error:
            logger.warning("Dropping task %s: %s", task.id, error)
            with self._lock:
                self._claiming.discard(task.id)
            return None
        except Exception:
            with self._lock:
                self._claiming.discard(task.id)
                self._queue.insert(0, task)
            raise

        with self._lock:
            self._claiming.discard(task.id)
            task.status = TaskStatus.PICKED
            task.last_picked_at = self.clock()
            task.version = ticket.version
            self._in_flight[task.id] = task
            self._last_picked_title = task.title
            picked = task.snapshot()
        logger.info("Picked task %s (%s)", picked.id, picked.title)
        return picked

    def check_for_blocked_tasks(self) -> list[Task]:
        """Escalate picked tasks idle longer than the timeout, once each."""

        now = self.clock()
        escalated: list[tuple[Task, float]] = []
        with self._lock:
            for task in [*self._queue, *self._in_flight.values()]:
                if task.last_picked_at is None or task.blocked_at is not None:
                    continue
                idle_seconds = (now - task.last_picked_at).total_seconds()
                if idle_seconds <= self.task_timeout_seconds:
                    continue
                task.status = TaskStatus.BLOCKED
                task.blocked_at = now
                self._in_flight.pop(task.id, None)
                self._queue = [item for item in self._queue if item is not task]
                self._escalated.append(task)
                escalated.append((task, idle_seconds))

        for task, idle_seconds in escalated:
            logger.warning(
                "Task %s idle for %.0fs (timeout %ss), escalating",
                task.id,
                idle_seconds,
                self.task_timeout_seconds,
            )
            try:
                self.store.create(
                    TicketCreate(
                        title=f"{ESCALATION_TITLE_PREFIX}{task.title}",
                        status=TicketStatus.BLOCKED,
                        priority=2,
                        description=(
                            f"Task idle for {round(idle_seconds)}s "
                            f"(timeout: {self.task_timeout_seconds:g}s)"
                        ),
                        ticket_type="escalation",
                    ),
                )
            except Exception:  # noqa: BLE001
                logger.exception("Failed to create escalation ticket for task %s", task.id)
        return [task.snapshot() for task, _ in escalated]

    def refresh_queue_from_tickets(self) -> None:
        """Reconcile the queue with the store.

        Queued tasks whose ticket is gone, no longer workable, or claimed
        elsewhere are dropped; still-open tickets keep their place with the
        latest version. New open tickets are appended, and so are escalated
        tasks whose ticket has been reopened.
        """

        try:
            tickets = self.store.list_tickets()
        except Exception:  # noqa: BLE001
            logger.exception("Failed to refresh task queue from tickets")
            return

        by_id = {ticket.id: ticket for ticket in tickets}
        with self._lock:
            kept: list[Task] = []
            for task in self._queue:
                ticket = by_id.get(task.id)
                if ticket is not None and self._adopt(task, ticket):
                    kept.append(task)
                else:
                    logger.debug("Removing task %s from queue", task.id)

            for task_id in list(self._in_flight):
                ticket = by_id.get(task_id)
                if ticket is None or ticket.status is not TicketStatus.IN_PROGRESS:
                    self._in_flight.pop(task_id)

            reopened = {ticket.id for ticket in tickets if ticket.status is TicketStatus.OPEN}
            self._escalated = [task for task in self._escalated if task.id not in reopened]

            known = {task.id for task in kept}
            known.update(self._in_flight)
            known.update(task.id for task in self._escalated)
            known.update(self._claiming)
            for ticket in tickets:
                if ticket.status is TicketStatus.OPEN and ticket.id not in known:
                    kept.append(Task.from_ticket(ticket))
            self._queue = kept
            self._needs_refresh = False

    def complete_task(self, task_id: str) -> Task | None:
        """Forget a reported task wherever the scheduler still tracks it."""

        with self._lock:
            task = self._in_flight.pop(task_id, None)
            for tracked in (self._queue, self._escalated):
                for item in list(tracked):
                    if item.id == task_id:
                        tracked.remove(item)
                        task = task or item
        return task.snapshot() if task is not None else None

    def touch_task(self, task_id: str) -> bool:
        """Refresh the idle clock of an in-flight task after partial progress."""

        with self._lock:
            task = self._in_flight.get(task_id)
            if task is None:
                return False
            task.last_picked_at = self.clock()
            return True

    def pending_tasks(self) -> list[Task]:
        with self._lock:
            return [task.snapshot() for task in self._queue]

    def in_flight_tasks(self) -> list[Task]:
        with self._lock:
            return [task.snapshot() for task in self._in_flight.values()]

    def escalated_tasks(self) -> list[Task]:
        with self._lock:
            return [task.snapshot() for task in self._escalated]

    def dependency_graph(self) -> DependencyGraph:
        """Graph over queued and in-flight tasks and their declared prerequisites."""

        with self._lock:
            tasks = [*self._queue, *self._in_flight.values()]
            return DependencyGraph.from_tasks({task.id: task.dependencies for task in tasks})

    def dispatch_order(self) -> list[str]:
        return self.dependency_graph().topological_sort()

    def get_queue_status(self) -> QueueStatus:
        blocked = self.store.list_tickets(statuses=[TicketStatus.BLOCKED])
        blocked_p1 = sum(1 for ticket in blocked if _is_p1_title(ticket.title))
        with self._lock:
            return QueueStatus(
                queue_count=len(self._queue),
                in_flight_count=len(self._in_flight),
                escalated_count=len(self._escalated),
                blocked_p1_count=blocked_p1,
                last_picked_title=self._last_picked_title,
                in_flight_titles=[task.title for task in self._in_flight.values()],
            )

    def _take_next(self, *, task_filter: TaskFilter, done_ids: set[str]) -> Task | None:
        for index, task in enumerate(self._queue):
            if task_filter is TaskFilter.READY and not all(
                dependency_id in done_ids for dependency_id in task.dependencies
            ):
                continue
            return self._queue.pop(index)
        return None

    def _done_dependency_ids(self) -> set[str]:
        with self._lock:
            wanted = {
                dependency_id for task in self._queue for dependency_id in task.dependencies
            }
        if not wanted:
            return set()
        done: set[str] = set()
        for dependency_id in wanted:
            ticket = self.store.get(dependency_id)
            if ticket is None:
                logger.warning("Unknown prerequisite %s treated as unmet", dependency_id)
            elif ticket.status is TicketStatus.DONE:
                done.add(dependency_id)
        return done

    def _log_withheld_tasks(self) -> None:
        analysis = analyze_cycles(self.dependency_graph())
        if analysis.has_cycles:
            for line in format_cycle_report(analysis):
                if line:
                    logger.warning("%s", line)
        else:
            logger.debug("All queued tasks are waiting on unfinished prerequisites")

    def _adopt(self, task: Task, ticket: TicketView) -> bool:
        if ticket.status is TicketStatus.OPEN:
            task.version = ticket.version
            task.title = ticket.title
            task.dependencies = ticket.dependencies
            return True
        return ticket.status is TicketStatus.IN_PROGRESS and ticket.version == task.version

    def _on_ticket_changed(self, ticket: TicketView) -> None:
        with self._lock:
            if ticket.id in self._claiming:
                return
            for task in list(self._queue):
                if task.id == ticket.id:
                    if not self._adopt(task, ticket):
                        self._queue.remove(task)
                    return
            if ticket.id in self._in_flight:
                if ticket.status is not TicketStatus.IN_PROGRESS:
                    self._in_flight.pop(ticket.id)
                return
            for task in self._escalated:
                if task.id == ticket.id:
                    if ticket.status is not TicketStatus.OPEN:
                        return
                    self._escalated.remove(task)
                    logger.info("Escalated task %s was reopened, queueing it again", ticket.id)
                    break
            if ticket.status is TicketStatus.OPEN:
                self._queue.append(Task.from_ticket(ticket))


def _is_p1_title(title: str) -> bool:
    return title.strip().lower().startswith(_P1_TITLE_PREFIXES)

