"""Cooperative cancellation helpers"""

import asyncio
from typing import Optional, Protocol


class CancelSignal(Protocol):
    """Anything exposing ``is_set()``: asyncio.Event, threading.Event"""

    def is_set(self) -> bool: ...


def raise_if_cancelled(cancel_event: Optional[CancelSignal]) -> None:
    """Raise asyncio.CancelledError if the signal has been set"""
    if cancel_event is not None and cancel_event.is_set():
        raise asyncio.CancelledError("Operation cancelled")
