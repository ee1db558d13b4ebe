from __future__ import annotations

import logging
import threading

import allure
import pytest

from task_orchestrator.errors import (
    InvalidTransitionError,
    TicketConflictError,
    TicketNotFoundError,
    TicketValidationError,
)
from task_orchestrator.tickets.models import (
    ThreadRole,
    TicketCreate,
    TicketPatch,
    TicketStatus,
    TicketView,
)
from task_orchestrator.tickets.repository import TicketRepository
from task_orchestrator.tickets.state_machine import is_valid_transition

pytestmark = [
    allure.epic("Ticket Store"),
    allure.feature("Versioning & State Machine"),
]


def test_create_ticket_starts_at_version_one(repository: TicketRepository) -> None:
    ticket = repository.create(
        TicketCreate(
            title="  Write parser  ",
            description="Tokenizer first",
            dependencies=("TICKET-A", "TICKET-A", " "),
        ),
    )

    assert ticket.id.startswith("TICKET-")
    assert ticket.title == "Write parser"
    assert ticket.status is TicketStatus.OPEN
    assert ticket.version == 1
    assert ticket.priority == 2
    assert ticket.dependencies == ("TICKET-A",)
    assert ticket.thread == []
    assert ticket.created_at.tzinfo is not None
    assert repository.get(ticket.id) == ticket


def test_create_rejects_blank_title(repository: TicketRepository) -> None:
    with pytest.raises(TicketValidationError, match="title must not be empty"):
        repository.create(TicketCreate(title="   "))
    assert repository.list_tickets() == []


def test_update_bumps_version_and_stale_version_is_rejected(
    repository: TicketRepository,
) -> None:
    ticket = repository.create(TicketCreate(title="Add login"))

    updated = repository.update(
        ticket.id,
        TicketPatch(status=TicketStatus.IN_PROGRESS, priority=1),
        expected_version=1,
    )
    assert updated.version == 2
    assert updated.status is TicketStatus.IN_PROGRESS
    assert updated.priority == 1

    with pytest.raises(TicketConflictError) as conflict:
        repository.update(ticket.id, TicketPatch(title="Renamed"), expected_version=1)

    assert conflict.value.expected_version == 1
    assert conflict.value.actual_version == 2
    assert conflict.value.details()["code"] == "TICKET_UPDATE_CONFLICT"
    assert conflict.value.resolution_steps()[0].endswith("version 2")
    stored = repository.get(ticket.id)
    assert stored is not None
    assert stored.title == "Add login"
    assert stored.version == 2


def test_invalid_transition_lists_allowed_targets(repository: TicketRepository) -> None:
    ticket = repository.create(TicketCreate(title="Skip ahead"))

    with pytest.raises(InvalidTransitionError) as error:
        repository.update(ticket.id, TicketPatch(status=TicketStatus.DONE))

    assert "Allowed: in-progress, blocked, pending" in str(error.value)
    assert error.value.details()["allowed_transitions"] == ["in-progress", "blocked", "pending"]
    stored = repository.get(ticket.id)
    assert stored is not None
    assert stored.status is TicketStatus.OPEN
    assert stored.version == 1


def test_done_is_terminal_but_same_status_is_accepted(repository: TicketRepository) -> None:
    ticket = repository.create(TicketCreate(title="Finish me"))
    repository.update(ticket.id, TicketPatch(status=TicketStatus.IN_PROGRESS))
    done = repository.update(ticket.id, TicketPatch(status=TicketStatus.DONE))

    with pytest.raises(InvalidTransitionError, match="none \\(terminal\\)"):
        repository.update(ticket.id, TicketPatch(status=TicketStatus.OPEN))

    again = repository.update(
        ticket.id,
        TicketPatch(status=TicketStatus.DONE, resolution="shipped"),
        expected_version=done.version,
    )
    assert again.status is TicketStatus.DONE
    assert again.resolution == "shipped"
    assert again.version == done.version + 1


def test_transition_table_matches_lifecycle() -> None:
    assert is_valid_transition(TicketStatus.BLOCKED, TicketStatus.OPEN)
    assert is_valid_transition(TicketStatus.PENDING, TicketStatus.IN_PROGRESS)
    assert is_valid_transition(TicketStatus.IN_PROGRESS, TicketStatus.DONE)
    assert not is_valid_transition(TicketStatus.OPEN, TicketStatus.DONE)
    assert not is_valid_transition(TicketStatus.BLOCKED, TicketStatus.DONE)
    assert not is_valid_transition(TicketStatus.DONE, TicketStatus.IN_PROGRESS)


def test_missing_ticket_raises_not_found(repository: TicketRepository) -> None:
    assert repository.get("TICKET-MISSING") is None
    with pytest.raises(TicketNotFoundError):
        repository.update("TICKET-MISSING", TicketPatch(title="x"))
    with pytest.raises(TicketNotFoundError):
        repository.history("TICKET-MISSING")


def test_thread_append_and_history(repository: TicketRepository) -> None:
    ticket = repository.create(TicketCreate(title="Discuss API"))
    repository.update(ticket.id, TicketPatch(status=TicketStatus.BLOCKED))
    replied = repository.append_thread_message(
        ticket.id,
        role=ThreadRole.ASSISTANT,
        content="Which endpoint?",
        status="question",
    )

    assert replied.version == 3
    assert [message.content for message in replied.thread] == ["Which endpoint?"]
    assert replied.thread[0].role is ThreadRole.ASSISTANT
    assert replied.to_dict()["thread"][0]["status"] == "question"

    with pytest.raises(TicketValidationError):
        repository.append_thread_message(ticket.id, role=ThreadRole.USER, content="  ")

    events = repository.history(ticket.id)
    assert [event.event_type for event in events] == [
        "created",
        "status_changed",
        "thread_appended",
    ]
    assert [event.version for event in events] == [1, 2, 3]
    assert events[1].status_from is TicketStatus.OPEN
    assert events[1].status_to is TicketStatus.BLOCKED
    assert events[2].details == {"chars": 15, "role": "assistant"}


def test_list_tickets_keeps_creation_order_filters_and_pages(
    repository: TicketRepository,
) -> None:
    first = repository.create(TicketCreate(title="First"))
    second = repository.create(TicketCreate(title="Second", status=TicketStatus.BLOCKED))
    third = repository.create(TicketCreate(title="Third"))

    assert [ticket.id for ticket in repository.list_tickets()] == [first.id, second.id, third.id]
    assert [
        ticket.id for ticket in repository.list_tickets(statuses=[TicketStatus.OPEN])
    ] == [first.id, third.id]
    assert [ticket.id for ticket in repository.list_tickets(limit=1, offset=1)] == [second.id]


def test_subscribers_receive_committed_views_until_unsubscribed(
    repository: TicketRepository,
) -> None:
    seen: list[TicketView] = []
    unsubscribe = repository.subscribe(seen.append)

    ticket = repository.create(TicketCreate(title="Watch me"))
    repository.update(ticket.id, TicketPatch(status=TicketStatus.IN_PROGRESS))
    unsubscribe()
    repository.update(ticket.id, TicketPatch(status=TicketStatus.DONE))

    assert [(view.status, view.version) for view in seen] == [
        (TicketStatus.OPEN, 1),
        (TicketStatus.IN_PROGRESS, 2),
    ]
    assert len(repository.notifier) == 0


def test_failing_subscriber_does_not_break_the_writer(
    repository: TicketRepository,
    caplog: pytest.LogCaptureFixture,
) -> None:
    def _explode(_: TicketView) -> None:
        raise RuntimeError("listener bug")

    repository.subscribe(_explode)
    with caplog.at_level(logging.ERROR, logger="task_orchestrator.tickets.notifications"):
        ticket = repository.create(TicketCreate(title="Still saved"))

    assert repository.get(ticket.id) is not None
    assert "Ticket change subscriber failed" in caplog.text


def test_concurrent_guarded_updates_have_exactly_one_winner(
    repository: TicketRepository,
) -> None:
    ticket = repository.create(TicketCreate(title="Contended"))
    barrier = threading.Barrier(6)
    outcomes: list[str] = []
    outcomes_lock = threading.Lock()

    def _claim(index: int) -> None:
        barrier.wait(timeout=5)
        try:
            repository.update(
                ticket.id,
                TicketPatch(status=TicketStatus.IN_PROGRESS, assignee=f"worker-{index}"),
                expected_version=1,
            )
            outcome = "ok"
        except TicketConflictError:
            outcome = "conflict"
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=_claim, args=(index,)) for index in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == ["conflict"] * 5 + ["ok"]
    stored = repository.get(ticket.id)
    assert stored is not None
    assert stored.version == 2
    assert stored.status is TicketStatus.IN_PROGRESS
