"""Cooperative stop controller.

Pure in-memory flag machine consulted by the step scheduler at every step
boundary. A non-graceful request takes effect at the next boundary; a graceful
request only once the scheduler has confirmed the current step finished.
"""

from __future__ import annotations

import logging
from typing import Any

from taskengine.models.results import StopState

logger = logging.getLogger(__name__)


class StopController:
    """Tracks a stop request and the progress needed to resume afterwards.

    Usage:
        stop = StopController()
        stop.request_stop(graceful=True, save_state=True)
        ...
        stop.update_state(session_id, completed_steps=3, last_step_id=12)
        stop.confirm_stop()
        if stop.should_stop():
            state = stop.get_stop_state()
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        """Clear every field so the controller can serve another session."""
        self._stop_requested = False
        self._stop_confirmed = False
        self._graceful = True
        self._save_state = True
        self._session_id: str | None = None
        self._completed_steps = 0
        self._last_step_id: int | None = None
        self._partial_result: Any = None

    def request_stop(self, graceful: bool = True, save_state: bool = True) -> None:
        self._stop_requested = True
        self._stop_confirmed = False
        self._graceful = graceful
        self._save_state = save_state
        logger.info(
            "Stop requested for session %s (graceful=%s, save_state=%s)",
            self._session_id, graceful, save_state,
        )

    def has_stop_request(self) -> bool:
        return self._stop_requested

    def should_stop(self) -> bool:
        if not self._stop_requested:
            return False
        if not self._graceful:
            return True
        return self._stop_confirmed

    def confirm_stop(self) -> None:
        """Called once per completed step; only meaningful after a request."""
        if self._stop_requested:
            self._stop_confirmed = True

    def update_state(
        self,
        session_id: str,
        completed_steps: int,
        last_step_id: int | None = None,
        partial_result: Any = None,
    ) -> None:
        self._session_id = session_id
        self._completed_steps = completed_steps
        if last_step_id is not None:
            self._last_step_id = last_step_id
        if partial_result is not None:
            self._partial_result = partial_result

    def get_stop_state(self) -> StopState | None:
        """Resume information, or None when no session has been tracked."""
        if self._session_id is None:
            return None
        return StopState(
            session_id=self._session_id,
            completed_steps=self._completed_steps,
            last_step_id=self._last_step_id,
            partial_result=self._partial_result,
            graceful=self._graceful,
            can_resume=self._save_state,
        )

    def is_graceful(self) -> bool:
        return self._graceful

    def should_save_state(self) -> bool:
        return self._save_state

    def is_stop_confirmed(self) -> bool:
        return self._stop_confirmed
