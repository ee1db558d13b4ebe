"""Persistent ticket store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from task_orchestrator.errors import (
    TicketConflictError,
    TicketNotFoundError,
    TicketValidationError,
)
from task_orchestrator.storage.alembic_runner import upgrade_head
from task_orchestrator.storage.common import (
    build_sqlite_engine,
    from_iso,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_orchestrator.storage.sqlmodel_models import TicketEventRow, TicketRow
from task_orchestrator.tickets.models import (
    ThreadMessage,
    ThreadRole,
    TicketCreate,
    TicketEventView,
    TicketPatch,
    TicketStatus,
    TicketView,
)
from task_orchestrator.tickets.notifications import TicketListener, TicketNotifier
from task_orchestrator.tickets.state_machine import validate_transition

logger = logging.getLogger(__name__)


class TicketRepository:
    """Ticket persistence facade with optimistic versioning.

    Every successful mutation bumps ``version`` through a compare-and-swap
    ``UPDATE ... WHERE version = :observed``. Conflicts and illegal status
    transitions are raised to the caller and never retried here.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5000,
        notifier: TicketNotifier | None = None,
    ) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self.notifier = notifier or TicketNotifier()

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def subscribe(self, listener: TicketListener) -> Callable[[], None]:
        """Register a change callback; returns a function that unregisters it."""

        return self.notifier.subscribe(listener)

    def create(self, payload: TicketCreate) -> TicketView:
        """Create a ticket at version 1."""

        title = payload.title.strip()
        if not title:
            raise TicketValidationError("Ticket title must not be empty.")
        status = TicketStatus(payload.status)
        now = utc_now()
        ticket_id = f"TICKET-{uuid4().hex[:12].upper()}"
        dependencies = _normalize_dependencies(payload.dependencies)

        with Session(self.engine) as session:
            row = TicketRow(
                ticket_id=ticket_id,
                title=title,
                status=status.value,
                priority=payload.priority,
                description=payload.description,
                ticket_type=payload.ticket_type,
                creator=payload.creator,
                assignee=payload.assignee,
                dependencies_json=json.dumps(dependencies),
                thread_json="[]",
                version=1,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                ticket_id=ticket_id,
                event_type="created",
                status_from=None,
                status_to=status,
                version=1,
                details={
                    "title": title,
                    "priority": payload.priority,
                    "creator": payload.creator,
                    "dependencies": dependencies,
                },
            )
            session.commit()
            session.refresh(row)
            view = _to_ticket_view(row)

        logger.debug("Created ticket %s (%s)", view.id, view.status.value)
        self.notifier.publish(view)
        return view

    def update(
        self,
        ticket_id: str,
        patch: TicketPatch,
        *,
        expected_version: int | None = None,
    ) -> TicketView:
        """Apply a patch guarded by the ticket version.

        Without ``expected_version`` the version read at the start of the call
        is used as the guard, so a concurrent writer still surfaces as a
        conflict instead of a lost update.
        """

        changed = patch.changed_fields()
        if "title" in changed and not str(changed["title"]).strip():
            raise TicketValidationError("Ticket title must not be empty.")

        with Session(self.engine) as session:
            row = self._get_row(session=session, ticket_id=ticket_id)
            if expected_version is not None and expected_version != row.version:
                raise TicketConflictError(
                    ticket_id=ticket_id,
                    expected_version=expected_version,
                    actual_version=row.version,
                )

            current_status = TicketStatus(row.status)
            requested_status = TicketStatus(patch.status) if patch.status is not None else None
            if requested_status is not None:
                validate_transition(
                    ticket_id=ticket_id,
                    current=current_status,
                    requested=requested_status,
                )

            values: dict[str, Any] = {}
            if requested_status is not None:
                values["status"] = requested_status.value
            if patch.title is not None:
                values["title"] = patch.title.strip()
            if patch.description is not None:
                values["description"] = patch.description
            if patch.priority is not None:
                values["priority"] = patch.priority
            if patch.dependencies is not None:
                values["dependencies_json"] = json.dumps(
                    _normalize_dependencies(patch.dependencies),
                )
            if patch.assignee is not None:
                values["assignee"] = patch.assignee
            if patch.resolution is not None:
                values["resolution"] = patch.resolution

            status_changed = requested_status is not None and requested_status != current_status
            view = self._compare_and_swap(
                session=session,
                row=row,
                values=values,
                event_type="status_changed" if status_changed else "updated",
                status_from=current_status if status_changed else None,
                status_to=requested_status if status_changed else None,
                details=_event_details(changed),
            )

        self.notifier.publish(view)
        return view

    def append_thread_message(  # noqa: PLR0913
        self,
        ticket_id: str,
        *,
        role: ThreadRole,
        content: str,
        status: str | None = None,
        expected_version: int | None = None,
    ) -> TicketView:
        """Append one entry to the ticket conversation log."""

        if not content.strip():
            raise TicketValidationError("Thread message content must not be empty.")

        with Session(self.engine) as session:
            row = self._get_row(session=session, ticket_id=ticket_id)
            if expected_version is not None and expected_version != row.version:
                raise TicketConflictError(
                    ticket_id=ticket_id,
                    expected_version=expected_version,
                    actual_version=row.version,
                )
            thread = _load_thread(row.thread_json)
            thread.append(
                ThreadMessage(
                    role=ThreadRole(role),
                    content=content,
                    created_at=utc_now(),
                    status=status,
                ),
            )
            view = self._compare_and_swap(
                session=session,
                row=row,
                values={"thread_json": json.dumps([item.to_dict() for item in thread])},
                event_type="thread_appended",
                status_from=None,
                status_to=None,
                details={"role": ThreadRole(role).value, "chars": len(content)},
            )

        self.notifier.publish(view)
        return view

    def get(self, ticket_id: str) -> TicketView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(TicketRow).where(TicketRow.ticket_id == ticket_id),
            ).one_or_none()
            if row is None:
                return None
            return _to_ticket_view(row)

    def list_tickets(
        self,
        *,
        statuses: Iterable[TicketStatus] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[TicketView]:
        """List tickets in creation order, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(TicketRow).order_by(col(TicketRow.id).asc())
            if statuses is not None:
                wanted = [TicketStatus(status).value for status in statuses]
                statement = statement.where(col(TicketRow.status).in_(wanted))
            if offset:
                statement = statement.offset(offset)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            return [_to_ticket_view(row) for row in rows]

    def history(self, ticket_id: str) -> list[TicketEventView]:
        """Return the audit trail of a ticket, oldest first."""

        with Session(self.engine) as session:
            self._get_row(session=session, ticket_id=ticket_id)
            event_rows = session.exec(
                select(TicketEventRow)
                .where(TicketEventRow.ticket_id == ticket_id)
                .order_by(col(TicketEventRow.id).asc()),
            ).all()

        events: list[TicketEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TicketEventView(
                    event_id=row.id or 0,
                    ticket_id=row.ticket_id,
                    event_type=row.event_type,
                    status_from=(
                        TicketStatus(row.status_from) if row.status_from is not None else None
                    ),
                    status_to=TicketStatus(row.status_to) if row.status_to is not None else None,
                    version=row.version,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return events

    def _compare_and_swap(  # noqa: PLR0913
        self,
        *,
        session: Session,
        row: TicketRow,
        values: dict[str, Any],
        event_type: str,
        status_from: TicketStatus | None,
        status_to: TicketStatus | None,
        details: dict[str, object],
    ) -> TicketView:
        observed_version = row.version
        next_version = observed_version + 1
        result = session.exec(
            sa_update(TicketRow)
            .where(
                col(TicketRow.ticket_id) == row.ticket_id,
                col(TicketRow.version) == observed_version,
            )
            .values(
                **values,
                version=next_version,
                updated_at=to_db_datetime(utc_now()),
            )
            .execution_options(synchronize_session=False),
        )
        if result.rowcount != 1:
            session.rollback()
            actual = self._current_version(session=session, ticket_id=row.ticket_id)
            raise TicketConflictError(
                ticket_id=row.ticket_id,
                expected_version=observed_version,
                actual_version=actual,
            )

        self._add_event(
            session=session,
            ticket_id=row.ticket_id,
            event_type=event_type,
            status_from=status_from,
            status_to=status_to,
            version=next_version,
            details=details,
        )
        session.commit()
        session.refresh(row)
        return _to_ticket_view(row)

    def _get_row(self, *, session: Session, ticket_id: str) -> TicketRow:
        row = session.exec(
            select(TicketRow).where(TicketRow.ticket_id == ticket_id),
        ).one_or_none()
        if row is None:
            raise TicketNotFoundError(ticket_id)
        return row

    def _current_version(self, *, session: Session, ticket_id: str) -> int:
        version = session.exec(
            select(TicketRow.version).where(TicketRow.ticket_id == ticket_id),
        ).one_or_none()
        if version is None:
            raise TicketNotFoundError(ticket_id)
        return int(version)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        ticket_id: str,
        event_type: str,
        status_from: TicketStatus | None,
        status_to: TicketStatus | None,
        version: int,
        details: dict[str, object],
    ) -> None:
        session.add(
            TicketEventRow(
                ticket_id=ticket_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                version=version,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _normalize_dependencies(dependencies: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    normalized: list[str] = []
    for item in dependencies:
        value = str(item).strip()
        if not value or value in seen:
            continue
        seen.add(value)
        normalized.append(value)
    return normalized


def _event_details(changed: dict[str, Any]) -> dict[str, object]:
    details: dict[str, object] = {}
    for key, value in changed.items():
        if isinstance(value, TicketStatus):
            details[key] = value.value
        elif isinstance(value, tuple):
            details[key] = list(value)
        elif key == "description":
            details["description_chars"] = len(value)
        else:
            details[key] = value
    return details


def _load_thread(raw: str) -> list[ThreadMessage]:
    parsed = json.loads(raw or "[]")
    messages: list[ThreadMessage] = []
    if not isinstance(parsed, list):
        return messages
    for item in parsed:
        if not isinstance(item, dict):
            continue
        messages.append(
            ThreadMessage(
                role=ThreadRole(item.get("role", ThreadRole.SYSTEM.value)),
                content=str(item.get("content", "")),
                created_at=from_iso(str(item["createdAt"])),
                status=item.get("status"),
            ),
        )
    return messages


def _to_ticket_view(row: TicketRow) -> TicketView:
    dependencies = json.loads(row.dependencies_json or "[]")
    return TicketView(
        id=row.ticket_id,
        title=row.title,
        status=TicketStatus(row.status),
        priority=row.priority,
        description=row.description,
        version=row.version,
        dependencies=tuple(str(item) for item in dependencies),
        thread=_load_thread(row.thread_json),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        ticket_type=row.ticket_type,
        creator=row.creator,
        assignee=row.assignee,
        resolution=row.resolution,
    )
