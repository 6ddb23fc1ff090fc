from __future__ import annotations

import threading
from collections.abc import Callable

from .batch import CancelScope
from .mocks import ANY, FakeDynamoDBClient, InMemoryStore, StoreCall


def no_sleep(_: float) -> None:
    return None


class RecordingSleep:
    """Injectable ``sleep`` that records the requested delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def cancel_after(calls: int) -> tuple[CancelScope, Callable[[StoreCall], None]]:
    """A cancel scope plus an ``InMemoryStore`` hook that trips it after ``calls`` store calls."""
    if calls <= 0:
        raise ValueError("calls must be > 0")

    event = threading.Event()
    seen = 0
    lock = threading.Lock()

    def hook(_: StoreCall) -> None:
        nonlocal seen
        with lock:
            seen += 1
            if seen >= calls:
                event.set()

    return CancelScope(event=event), hook


__all__ = [
    "ANY",
    "FakeDynamoDBClient",
    "InMemoryStore",
    "RecordingSleep",
    "StoreCall",
    "cancel_after",
    "no_sleep",
]
