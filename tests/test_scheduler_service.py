from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from task_orchestrator.scheduler.models import TaskFilter, TaskStatus
from task_orchestrator.scheduler.service import ESCALATION_TITLE_PREFIX, OrchestratorService
from task_orchestrator.tickets.models import TicketCreate, TicketPatch, TicketStatus
from task_orchestrator.tickets.repository import TicketRepository

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Task Queue & Escalation"),
]


class _ManualClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class _BrokenStore:
    def list_tickets(self, **_: object) -> list[object]:
        raise RuntimeError("database unavailable")

    def subscribe(self, _: object) -> object:
        return lambda: None


def _scheduler(repository: TicketRepository, **kwargs: object) -> OrchestratorService:
    scheduler = OrchestratorService(repository, **kwargs)  # type: ignore[arg-type]
    scheduler.initialize()
    return scheduler


def test_tasks_are_dispatched_in_ticket_order_and_claimed(
    repository: TicketRepository,
) -> None:
    first = repository.create(TicketCreate(title="First"))
    second = repository.create(TicketCreate(title="Second"))
    repository.create(TicketCreate(title="Parked", status=TicketStatus.PENDING))
    scheduler = _scheduler(repository)

    picked = scheduler.get_next_task()
    assert picked is not None
    assert picked.id == first.id
    assert picked.status is TaskStatus.PICKED
    assert picked.last_picked_at is not None
    claimed = repository.get(first.id)
    assert claimed is not None
    assert claimed.status is TicketStatus.IN_PROGRESS
    assert claimed.version == 2

    following = scheduler.get_next_task()
    assert following is not None
    assert following.id == second.id
    assert scheduler.get_next_task() is None
    assert {task.id for task in scheduler.in_flight_tasks()} == {first.id, second.id}
    assert scheduler.get_queue_status().last_picked_title == "Second"


def test_ready_filter_waits_for_prerequisites(repository: TicketRepository) -> None:
    base = repository.create(TicketCreate(title="Schema"))
    follow_up = repository.create(TicketCreate(title="API", dependencies=(base.id,)))
    scheduler = _scheduler(repository)

    assert scheduler.dispatch_order() == [base.id, follow_up.id]
    picked = scheduler.get_next_task()
    assert picked is not None
    assert picked.id == base.id
    assert scheduler.get_next_task() is None

    repository.update(base.id, TicketPatch(status=TicketStatus.DONE))
    assert scheduler.in_flight_tasks() == []

    unblocked = scheduler.get_next_task()
    assert unblocked is not None
    assert unblocked.id == follow_up.id


def test_unknown_prerequisite_is_unmet_unless_filter_is_all(
    repository: TicketRepository,
    caplog: pytest.LogCaptureFixture,
) -> None:
    orphan = repository.create(TicketCreate(title="Orphan", dependencies=("TICKET-GONE",)))
    scheduler = _scheduler(repository)

    with caplog.at_level(logging.WARNING, logger="task_orchestrator.scheduler.service"):
        assert scheduler.get_next_task(TaskFilter.READY) is None
    assert "Unknown prerequisite TICKET-GONE" in caplog.text

    picked = scheduler.get_next_task("all")
    assert picked is not None
    assert picked.id == orphan.id


def test_concurrent_consumers_never_receive_the_same_task(
    repository: TicketRepository,
) -> None:
    created = {repository.create(TicketCreate(title=f"Task {index}")).id for index in range(8)}
    scheduler = _scheduler(repository)
    barrier = threading.Barrier(4)
    received: list[str] = []
    received_lock = threading.Lock()

    def _consume() -> None:
        barrier.wait(timeout=5)
        while True:
            task = scheduler.get_next_task()
            if task is None:
                return
            with received_lock:
                received.append(task.id)

    threads = [threading.Thread(target=_consume) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(received) == sorted(created)
    assert len(received) == len(set(received))


def test_claim_conflict_requeues_then_reconciles(tmp_path: Path) -> None:
    db_path = tmp_path / "shared.db"
    first_store = TicketRepository(db_path)
    first_store.init_schema()
    second_store = TicketRepository(db_path)
    first = first_store.create(TicketCreate(title="Contended"))
    second = first_store.create(TicketCreate(title="Free"))

    scheduler_a = _scheduler(first_store)
    scheduler_b = _scheduler(second_store)

    picked_a = scheduler_a.get_next_task()
    assert picked_a is not None
    assert picked_a.id == first.id

    assert scheduler_b.get_next_task() is None
    assert [task.id for task in scheduler_b.pending_tasks()] == [first.id, second.id]

    picked_b = scheduler_b.get_next_task()
    assert picked_b is not None
    assert picked_b.id == second.id
    assert scheduler_b.pending_tasks() == []

    first_store.close()
    second_store.close()


def test_idle_task_is_escalated_exactly_once(repository: TicketRepository) -> None:
    ticket = repository.create(TicketCreate(title="Slow task"))
    clock = _ManualClock()
    scheduler = _scheduler(repository, task_timeout_seconds=30, clock=clock)
    assert scheduler.get_next_task() is not None

    clock.advance(30)
    assert scheduler.check_for_blocked_tasks() == []

    clock.advance(1)
    escalated = scheduler.check_for_blocked_tasks()
    assert [task.id for task in escalated] == [ticket.id]
    assert escalated[0].status is TaskStatus.BLOCKED
    assert escalated[0].blocked_at == clock.now

    clock.advance(120)
    assert scheduler.check_for_blocked_tasks() == []

    blocked = repository.list_tickets(statuses=[TicketStatus.BLOCKED])
    assert [item.title for item in blocked] == [f"{ESCALATION_TITLE_PREFIX}Slow task"]
    assert blocked[0].description == "Task idle for 31s (timeout: 30s)"
    assert blocked[0].ticket_type == "escalation"

    status = scheduler.get_queue_status()
    assert status.in_flight_count == 0
    assert status.escalated_count == 1
    assert status.blocked_p1_count == 1


def test_blocked_filter_returns_escalated_task_without_claiming(
    repository: TicketRepository,
) -> None:
    ticket = repository.create(TicketCreate(title="Stuck"))
    clock = _ManualClock()
    scheduler = _scheduler(repository, task_timeout_seconds=5, clock=clock)
    scheduler.get_next_task()
    clock.advance(10)

    first_look = scheduler.get_next_task(TaskFilter.BLOCKED)
    second_look = scheduler.get_next_task(TaskFilter.BLOCKED)

    assert first_look is not None
    assert second_look is not None
    assert first_look.id == second_look.id == ticket.id
    assert len(scheduler.escalated_tasks()) == 1


def test_touch_task_resets_idle_clock(repository: TicketRepository) -> None:
    ticket = repository.create(TicketCreate(title="Long running"))
    clock = _ManualClock()
    scheduler = _scheduler(repository, task_timeout_seconds=30, clock=clock)
    scheduler.get_next_task()

    clock.advance(25)
    assert scheduler.touch_task(ticket.id)
    clock.advance(25)

    assert scheduler.check_for_blocked_tasks() == []
    assert not scheduler.touch_task("TICKET-UNKNOWN")


def test_complete_task_forgets_in_flight_task(repository: TicketRepository) -> None:
    ticket = repository.create(TicketCreate(title="Quick"))
    scheduler = _scheduler(repository, auto_refresh=False)
    scheduler.get_next_task()

    completed = scheduler.complete_task(ticket.id)

    assert completed is not None
    assert completed.id == ticket.id
    assert scheduler.in_flight_tasks() == []
    assert scheduler.complete_task(ticket.id) is None


def test_store_failure_on_initialize_leaves_queue_empty(
    caplog: pytest.LogCaptureFixture,
) -> None:
    scheduler = OrchestratorService(_BrokenStore(), auto_refresh=False)  # type: ignore[arg-type]

    with caplog.at_level(logging.ERROR, logger="task_orchestrator.scheduler.service"):
        scheduler.initialize()

    assert scheduler.pending_tasks() == []
    assert scheduler.get_next_task() is None
    assert "Failed to load tickets" in caplog.text


def test_refresh_appends_new_open_tickets(repository: TicketRepository) -> None:
    first = repository.create(TicketCreate(title="Loaded"))
    scheduler = _scheduler(repository, auto_refresh=False)
    second = repository.create(TicketCreate(title="Late"))
    repository.create(TicketCreate(title="Not workable", status=TicketStatus.BLOCKED))

    assert [task.id for task in scheduler.pending_tasks()] == [first.id]
    scheduler.refresh_queue_from_tickets()
    assert [task.id for task in scheduler.pending_tasks()] == [first.id, second.id]


def test_notifications_keep_queue_in_sync(repository: TicketRepository) -> None:
    first = repository.create(TicketCreate(title="Loaded"))
    scheduler = _scheduler(repository)

    second = repository.create(TicketCreate(title="Arrived later"))
    repository.update(first.id, TicketPatch(status=TicketStatus.BLOCKED))

    assert [task.id for task in scheduler.pending_tasks()] == [second.id]

    scheduler.shutdown()
    repository.create(TicketCreate(title="Unseen"))
    assert [task.id for task in scheduler.pending_tasks()] == [second.id]


def test_timeout_must_be_positive(repository: TicketRepository) -> None:
    with pytest.raises(ValueError, match="task_timeout_seconds"):
        OrchestratorService(repository, task_timeout_seconds=0)


def test_escalation_ticket_failure_does_not_stop_other_escalations(
    repository: TicketRepository,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    flaky = repository.create(TicketCreate(title="Flaky"))
    steady = repository.create(TicketCreate(title="Steady"))
    clock = _ManualClock()
    scheduler = _scheduler(repository, task_timeout_seconds=5, clock=clock)
    scheduler.get_next_task()
    scheduler.get_next_task()
    original_create = repository.create

    def _create(data: TicketCreate) -> object:
        if data.title == f"{ESCALATION_TITLE_PREFIX}Flaky":
            raise RuntimeError("disk full")
        return original_create(data)

    monkeypatch.setattr(repository, "create", _create)
    clock.advance(10)

    with caplog.at_level(logging.ERROR, logger="task_orchestrator.scheduler.service"):
        escalated = scheduler.check_for_blocked_tasks()

    assert [task.id for task in escalated] == [flaky.id, steady.id]
    assert f"Failed to create escalation ticket for task {flaky.id}" in caplog.text
    blocked = repository.list_tickets(statuses=[TicketStatus.BLOCKED])
    assert [item.title for item in blocked] == [f"{ESCALATION_TITLE_PREFIX}Steady"]
    assert len(scheduler.escalated_tasks()) == 2


def test_reopened_escalated_task_is_queued_again_on_refresh(
    repository: TicketRepository,
) -> None:
    ticket = repository.create(TicketCreate(title="Stuck"))
    clock = _ManualClock()
    scheduler = _scheduler(repository, task_timeout_seconds=5, clock=clock, auto_refresh=False)
    scheduler.get_next_task()
    clock.advance(10)
    assert [task.id for task in scheduler.check_for_blocked_tasks()] == [ticket.id]

    repository.update(ticket.id, TicketPatch(status=TicketStatus.BLOCKED))
    scheduler.refresh_queue_from_tickets()
    assert scheduler.pending_tasks() == []

    repository.update(ticket.id, TicketPatch(status=TicketStatus.OPEN))
    scheduler.refresh_queue_from_tickets()

    assert scheduler.escalated_tasks() == []
    assert [task.id for task in scheduler.pending_tasks()] == [ticket.id]
    picked = scheduler.get_next_task()
    assert picked is not None
    assert picked.id == ticket.id
    assert picked.blocked_at is None


def test_reopened_escalated_task_is_queued_again_on_notification(
    repository: TicketRepository,
) -> None:
    ticket = repository.create(TicketCreate(title="Stuck"))
    clock = _ManualClock()
    scheduler = _scheduler(repository, task_timeout_seconds=5, clock=clock)
    scheduler.get_next_task()
    clock.advance(10)
    scheduler.check_for_blocked_tasks()

    repository.update(ticket.id, TicketPatch(status=TicketStatus.PENDING))
    assert len(scheduler.escalated_tasks()) == 1
    repository.update(ticket.id, TicketPatch(status=TicketStatus.OPEN))

    assert scheduler.escalated_tasks() == []
    assert [task.id for task in scheduler.pending_tasks()] == [ticket.id]
