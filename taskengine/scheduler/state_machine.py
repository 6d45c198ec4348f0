"""Session state machine: transition table and illegal-transition enforcement."""

from __future__ import annotations

from datetime import datetime, timezone

from taskengine.models.session import Session

# === State Transition Table ===
# Key: (from_state, to_state) -> guard description
# Absent pair -> illegal transition

LEGAL_TRANSITIONS: dict[tuple[str, str], str] = {
    # From active
    ("active", "active"): "Step completes, next step begins",
    ("active", "completed"): "Finish action",
    ("active", "failed"): "Step limit, parse budget or scheduler error",
    ("active", "stopped"): "Stop requested at a step boundary",
    ("active", "paused"): "AskUser under interactive policy",
    ("active", "timeout"): "Session wall-clock limit reached",
    # From paused
    ("paused", "active"): "User answered or session resumed",
    ("paused", "stopped"): "Stop requested while waiting for the user",
    ("paused", "failed"): "Abandoned while waiting",
    # From stopped
    ("stopped", "active"): "Session resumed",
    # completed is terminal; failed and timeout have no way out
}

TERMINAL_STATES = {"completed"}

RESUMABLE_STATES = {"paused", "stopped"}


class IllegalTransitionError(Exception):
    """Raised when attempting an illegal session status transition."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Illegal transition: {from_state} -> {to_state}. "
            f"See LEGAL_TRANSITIONS for valid transitions."
        )


class SessionStateMachine:
    """Applies status transitions to Session rows.

    Stateless; the caller persists the changed row.

    Usage:
        machine = SessionStateMachine()
        machine.pause(session)
        await storage.update_session(session.id, status=session.status)
    """

    def transition(self, session: Session, to_state: str) -> None:
        """Move ``session`` to ``to_state``.

        Raises:
            IllegalTransitionError: If the transition is not legal.
        """
        from_state = session.status
        if not self.can_transition(from_state, to_state):
            raise IllegalTransitionError(from_state, to_state)
        session.status = to_state
        session.updated_at = datetime.now(timezone.utc)

    def complete(self, session: Session) -> None:
        self.transition(session, "completed")

    def fail(self, session: Session) -> None:
        self.transition(session, "failed")

    def stop(self, session: Session) -> None:
        self.transition(session, "stopped")

    def pause(self, session: Session) -> None:
        self.transition(session, "paused")

    def time_out(self, session: Session) -> None:
        self.transition(session, "timeout")

    def resume(self, session: Session) -> None:
        """Reactivate a paused or stopped session."""
        self.transition(session, "active")

    def can_transition(self, from_state: str, to_state: str) -> bool:
        if from_state in TERMINAL_STATES:
            return False
        return (from_state, to_state) in LEGAL_TRANSITIONS

    def get_valid_transitions(self, from_state: str) -> list[str]:
        if from_state in TERMINAL_STATES:
            return []
        return [to for (fr, to) in LEGAL_TRANSITIONS if fr == from_state]
