"""Cooperative cancellation for bulk and wide-range operations."""

import asyncio
import time
from typing import Optional


class OperationContext:
    """
    Deadline and/or cancel event checked between units of work.

    Work already committed when the context trips is kept; callers stop
    picking up new items and report how far they got.
    """

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.deadline = (
            time.monotonic() + timeout_seconds if timeout_seconds is not None else None
        )
        self.cancel_event = cancel_event or asyncio.Event()

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def timed_out(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set() or self.timed_out

    @property
    def reason(self) -> Optional[str]:
        if self.cancel_event.is_set():
            return "cancelled"
        if self.timed_out:
            return "deadline_exceeded"
        return None
