import asyncio
from typing import Callable, List, Optional

from lms_chat.schemas.notification import Notification

NotificationListener = Callable[[Optional[Notification]], None]


class Notifier:
    """Holds at most one transient notification and expires it after *ttl* seconds.

    A newer notification replaces the current one and restarts the timer;
    dismissing or acting on it cancels the timer.
    """

    def __init__(self, ttl: float = 5.0) -> None:
        self._ttl = ttl
        self._current: Optional[Notification] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._listeners: List[NotificationListener] = []

    @property
    def current(self) -> Optional[Notification]:
        return self._current

    def add_listener(self, listener: NotificationListener) -> None:
        self._listeners.append(listener)

    def show(self, notification: Notification) -> None:
        self._cancel_timer()
        self._current = notification
        self._timer = asyncio.get_running_loop().call_later(self._ttl, self._expire, notification)
        self._emit()

    def dismiss(self) -> Optional[Notification]:
        self._cancel_timer()
        previous, self._current = self._current, None
        if previous is not None:
            self._emit()
        return previous

    def _expire(self, notification: Notification) -> None:
        self._timer = None
        if self._current is notification:
            self._current = None
            self._emit()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _emit(self) -> None:
        for listener in list(self._listeners):
            listener(self._current)

    def close(self) -> None:
        self._cancel_timer()
        self._current = None
        self._listeners.clear()
