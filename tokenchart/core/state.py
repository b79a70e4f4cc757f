from __future__ import annotations

from typing import Generic, TypeVar

T = TypeVar("T")


class StateHolder(Generic[T]):
    """
    Read-through box for state shared with timers and deferred callbacks.

    Callbacks keep a reference to the holder, not to the value, so they always
    observe the latest value instead of whatever was current when they were scheduled.
    """

    def __init__(self, value: T) -> None:
        self._value = value

    def get(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        self._value = value
