# backend/clinic_view/services/session.py

import logging
from enum import Enum
from typing import Awaitable, Callable, List, Protocol

from clinic_view.core.errors import ClinicApiError

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    ACTIVE = "active"
    LOGGING_OUT = "logging_out"


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class SessionLifecycle:
    """
    Single owner of the "logout in progress" state.

    While LOGGING_OUT no fetch may be issued. Logout cancels every registered
    view, runs the backend round trip, and returns to ACTIVE whether that
    round trip succeeded or not.
    """

    def __init__(self):
        self._state = SessionState.ACTIVE
        self._views: List[Cancellable] = []

    @property
    def state(self) -> SessionState:
        return self._state

    def can_issue(self) -> bool:
        return self._state is SessionState.ACTIVE

    def register(self, view: Cancellable) -> None:
        if view not in self._views:
            self._views.append(view)

    def unregister(self, view: Cancellable) -> None:
        if view in self._views:
            self._views.remove(view)

    def cancel_views(self) -> None:
        for view in list(self._views):
            view.cancel()

    def begin_logout(self) -> bool:
        if self._state is not SessionState.ACTIVE:
            return False
        self._state = SessionState.LOGGING_OUT
        self.cancel_views()
        return True

    def end_logout(self) -> None:
        if self._state is SessionState.LOGGING_OUT:
            self._state = SessionState.ACTIVE
            self._views.clear()

    async def logout(self, round_trip: Callable[[], Awaitable[None]]) -> bool:
        """Run the logout sequence. Returns False if one was already in progress."""
        if not self.begin_logout():
            return False
        try:
            await round_trip()
        except ClinicApiError as exc:
            logger.warning("Logout request failed: %s", exc)
        finally:
            self.end_logout()
        return True
