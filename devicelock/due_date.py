"""
Due-Date Evaluator: locks the device once the local calendar date reaches dueDate.

Runs offline. Reads the Secret Store on every tick, never a cached copy.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, tzinfo
from typing import TYPE_CHECKING, Optional

from .models import parse_due_date
from .secret_store import SecretStore

if TYPE_CHECKING:
    from .state_machine import LockStateMachine

logger = logging.getLogger("devicelock.due_date")


def is_overdue(due_date: str, today: date) -> bool:
    """today >= dueDate. Raises ValueError for a malformed dueDate."""
    return today >= parse_due_date(due_date)


def local_today(tz: tzinfo | None = None) -> date:
    if tz is None:
        return datetime.now().astimezone().date()
    return datetime.now(tz).date()


class DueDateEvaluator:
    def __init__(self, store: SecretStore, machine: "LockStateMachine", tz: tzinfo | None = None):
        self.store = store
        self.machine = machine
        self.tz = tz

    async def run_once(self, today: Optional[date] = None) -> bool:
        """Returns True when a due-date lock was raised."""
        today = today or local_today(self.tz)
        snap = self.store.snapshot()
        if not snap.get("isRegistered"):
            return False
        due = snap.get("dueDate")
        if not due:
            return False
        try:
            overdue = is_overdue(due, today)
        except ValueError:
            logger.warning(f"DUE_DATE | malformed dueDate={due!r}, ignoring")
            return False
        if not overdue:
            logger.debug(f"DUE_DATE | due={due} today={today} not yet")
            return False
        if snap.get("locked"):
            return False

        logger.info(f"DUE_DATE | OVERDUE due={due} today={today}, raising lock")
        return await self.machine.due_date_tick(today)
