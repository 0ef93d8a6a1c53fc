from typing import Generic, TypeVar

T = TypeVar("T")


class LiveRef(Generic[T]):
    """Mutable cell read by long-lived callbacks.

    Handlers registered once at connect time read ``.current`` on every
    call, so they always see the latest value rather than the one captured
    at registration.
    """

    __slots__ = ("current",)

    def __init__(self, value: T) -> None:
        self.current = value

    def set(self, value: T) -> T:
        previous, self.current = self.current, value
        return previous

    def __repr__(self) -> str:
        return f"LiveRef({self.current!r})"
