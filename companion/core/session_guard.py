"""Session guard - fences stale asynchronous results after a session switch.

Each client connection owns one guard. A switch bumps a monotonically
increasing epoch and moves the current-session pointer before any request for
the new session goes out; anything tagged with another session id or an older
epoch is rejected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

SessionChangeHandler = Callable[[Optional[str], int], None]


@dataclass(frozen=True)
class SessionContext:
    session_id: Optional[str]
    epoch: int


class SessionGuard:
    """Current-session pointer plus epoch for one connection."""

    def __init__(self) -> None:
        self._session_id: Optional[str] = None
        self._epoch = 0
        self._handlers: list[SessionChangeHandler] = []

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def epoch(self) -> int:
        return self._epoch

    def begin_switch(self, session_id: str, epoch: Optional[int] = None) -> int:
        """Point the guard at `session_id` and return the new epoch.

        A client may propose its own epoch; the result is never lower than
        current + 1, so epochs stay strictly increasing.
        """
        new_epoch = self._epoch + 1
        if epoch is not None and epoch > new_epoch:
            new_epoch = epoch
        self._epoch = new_epoch
        self._session_id = session_id
        logger.debug("Switching to session %s (epoch %d)", session_id, new_epoch)
        self._notify()
        return new_epoch

    def clear(self) -> None:
        self._epoch += 1
        self._session_id = None
        logger.debug("Cleared session (epoch %d)", self._epoch)
        self._notify()

    def is_valid(self, session_id: Optional[str], epoch: Optional[int] = None) -> bool:
        """Accept a payload only if it belongs to the current session and epoch.

        With no current session, the first payload carrying a session id is
        accepted and becomes authoritative.
        """
        if self._session_id is None:
            if session_id:
                logger.debug("Initializing guard from payload session %s", session_id)
                self._session_id = session_id
                return True
            return False

        if not session_id or session_id != self._session_id:
            logger.debug("Rejecting payload for %r (current %r)", session_id, self._session_id)
            return False

        if epoch is not None and epoch < self._epoch:
            logger.debug("Rejecting stale payload (epoch %d < %d)", epoch, self._epoch)
            return False

        return True

    def is_current_session(self, session_id: Optional[str]) -> bool:
        return session_id == self._session_id

    def context(self) -> SessionContext:
        return SessionContext(session_id=self._session_id, epoch=self._epoch)

    def on_change(self, handler: SessionChangeHandler) -> Callable[[], None]:
        """Register a change handler. Returns a callable that removes it."""
        self._handlers.append(handler)

        def _remove() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _remove

    def _notify(self) -> None:
        for handler in list(self._handlers):
            try:
                handler(self._session_id, self._epoch)
            except Exception as e:  # noqa: BLE001 - one bad subscriber must not break switching
                logger.error("Session change handler failed: %s", e, exc_info=True)
