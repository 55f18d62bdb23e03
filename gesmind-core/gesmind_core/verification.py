"""In-flight phone verification sessions, one per surface."""

from __future__ import annotations

from dataclasses import dataclass


class VerificationError(Exception):
    """No usable verification session for a confirmation attempt."""

    def __init__(self, code: str, detail: str) -> None:
        """Create a verification error with a stable code."""
        super().__init__(detail)
        self.code = code
        self.detail = detail


@dataclass(frozen=True)
class VerificationSession:
    """A dispatched code awaiting confirmation."""

    surface_id: str
    phone_number: str
    verification_id: str


class VerificationSlot:
    """Holds the single live session for one surface.

    ``replace`` supersedes whatever was there, so a handle obtained before the
    latest code request can no longer be taken.
    """

    def __init__(self, surface_id: str) -> None:
        self.surface_id = surface_id
        self._current: VerificationSession | None = None

    @property
    def current(self) -> VerificationSession | None:
        return self._current

    def replace(self, phone_number: str, verification_id: str) -> VerificationSession:
        self._current = VerificationSession(
            surface_id=self.surface_id,
            phone_number=phone_number,
            verification_id=verification_id,
        )
        return self._current

    def take(self, session: VerificationSession | None = None) -> VerificationSession:
        """Consume the live session, or ``session`` if it is still the live one."""
        current = self._current
        if current is None:
            msg = "Request a verification code first."
            raise VerificationError("no-session", msg)
        if session is not None and session != current:
            msg = "This code request was replaced by a newer one."
            raise VerificationError("session-superseded", msg)
        self._current = None
        return current

    def peek(self, session: VerificationSession | None = None) -> VerificationSession:
        """Like ``take`` but leaves the session in place."""
        current = self.take(session)
        self._current = current
        return current

    def discard(self) -> None:
        self._current = None


__all__ = ["VerificationError", "VerificationSession", "VerificationSlot"]
