"""Change-notification registry for ticket mutations."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from task_orchestrator.tickets.models import TicketView

logger = logging.getLogger(__name__)

TicketListener = Callable[[TicketView], None]


class TicketNotifier:
    """Invoke registered callbacks after every committed create/update.

    Callbacks run synchronously on the writer's thread, after the commit.
    A failing subscriber is logged and never propagates into the writer.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: dict[int, TicketListener] = {}
        self._next_handle = 0

    def subscribe(self, listener: TicketListener) -> Callable[[], None]:
        with self._lock:
            handle = self._next_handle
            self._next_handle += 1
            self._listeners[handle] = listener

        def _unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(handle, None)

        return _unsubscribe

    def publish(self, ticket: TicketView) -> None:
        with self._lock:
            listeners = list(self._listeners.values())
        for listener in listeners:
            try:
                listener(ticket)
            except Exception:
                logger.exception("Ticket change subscriber failed for %s", ticket.id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)
