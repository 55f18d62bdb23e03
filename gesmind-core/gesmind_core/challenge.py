"""Anti-abuse challenge widgets bound to verification surfaces."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Protocol

PRIMARY_SURFACE = "recaptcha-container"
RECOVERY_SURFACE = "sec-recaptcha-container"

TokenSource = Callable[[str], str | None]

logger = logging.getLogger(__name__)


class ChallengeError(Exception):
    """Challenge widget could not be rendered, cleared or solved."""

    def __init__(self, code: str, detail: str) -> None:
        """Create a challenge error with a stable code."""
        super().__init__(detail)
        self.code = code
        self.detail = detail


class ChallengeWidget(Protocol):
    """A rendered challenge; yields opaque tokens until cleared."""

    surface_id: str

    async def token(self) -> str:
        """Return a fresh single-use challenge token."""

    def clear(self) -> None:
        """Release the widget so the surface can be rendered again."""


class ChallengeRenderer(Protocol):
    """Renders challenge widgets onto named surfaces."""

    def render(self, surface_id: str) -> ChallengeWidget:
        """Render a widget; fails when the surface still holds one."""

    def reset(self, surface_id: str) -> None:
        """Forget any widget left on ``surface_id``."""


class _TokenWidget:
    def __init__(self, renderer: TokenSourceRenderer, surface_id: str) -> None:
        self._renderer = renderer
        self.surface_id = surface_id
        self._cleared = False

    async def token(self) -> str:
        if self._cleared:
            msg = f"Challenge on {self.surface_id} was already cleared."
            raise ChallengeError("not-armed", msg)
        return self._renderer.take_token(self.surface_id)

    def clear(self) -> None:
        if self._cleared:
            return
        self._cleared = True
        self._renderer.reset(self.surface_id)


class TokenSourceRenderer:
    """Renderer whose tokens come from the host rather than a browser widget.

    Tokens are queued per surface by ``submit_token`` (the HTTP surface does
    this when a request carries a token). When the queue is empty the optional
    ``token_source`` callable is asked, which is how the CLI prompts.
    """

    def __init__(self, token_source: TokenSource | None = None) -> None:
        self._token_source = token_source
        self._rendered: set[str] = set()
        self._queued: dict[str, deque[str]] = {}

    def is_rendered(self, surface_id: str) -> bool:
        return surface_id in self._rendered

    def render(self, surface_id: str) -> ChallengeWidget:
        if surface_id in self._rendered:
            msg = f"reCAPTCHA has already been rendered in this element ({surface_id})."
            raise ChallengeError("already-rendered", msg)
        self._rendered.add(surface_id)
        return _TokenWidget(self, surface_id)

    def reset(self, surface_id: str) -> None:
        self._rendered.discard(surface_id)
        self._queued.pop(surface_id, None)

    def submit_token(self, surface_id: str, token: str) -> None:
        """Queue a token solved by the host for ``surface_id``."""
        if token:
            self._queued.setdefault(surface_id, deque()).append(token)

    def take_token(self, surface_id: str) -> str:
        """Pop the next token for ``surface_id``; each token is used once."""
        queued = self._queued.get(surface_id)
        if queued:
            return queued.popleft()
        token = self._token_source(surface_id) if self._token_source else None
        if not token:
            msg = "Complete the anti-abuse challenge before requesting a code."
            raise ChallengeError("missing-token", msg)
        return token


class ChallengeVerifier:
    """Keeps at most one armed widget and releases it deterministically."""

    def __init__(self, renderer: ChallengeRenderer) -> None:
        self.renderer = renderer
        self._widget: ChallengeWidget | None = None

    @property
    def surface_id(self) -> str | None:
        return self._widget.surface_id if self._widget else None

    def arm(self, surface_id: str) -> ChallengeWidget:
        """Bind a widget to ``surface_id``; a no-op when already armed there.

        A stale widget left on the surface is logged and reset, so the next
        mount renders cleanly.
        """
        if self._widget is not None:
            if self._widget.surface_id == surface_id:
                return self._widget
            self.disarm()
        try:
            self._widget = self.renderer.render(surface_id)
        except ChallengeError as exc:
            logger.warning("Challenge re-initialization failed on %s: %s", surface_id, exc.code)
            self.renderer.reset(surface_id)
            raise
        return self._widget

    def disarm(self) -> None:
        widget, self._widget = self._widget, None
        if widget is None:
            return
        try:
            widget.clear()
        except ChallengeError as exc:
            logger.warning("Challenge clear failed on %s: %s", widget.surface_id, exc.code)

    async def token(self) -> str:
        if self._widget is None:
            msg = "No challenge is armed for this surface."
            raise ChallengeError("not-armed", msg)
        return await self._widget.token()

    @contextmanager
    def scoped(self, surface_id: str) -> Iterator[ChallengeWidget]:
        """Arm for the duration of the block and disarm on every exit."""
        widget = self.arm(surface_id)
        try:
            yield widget
        finally:
            self.disarm()


__all__ = [
    "PRIMARY_SURFACE",
    "RECOVERY_SURFACE",
    "ChallengeError",
    "ChallengeRenderer",
    "ChallengeVerifier",
    "ChallengeWidget",
    "TokenSource",
    "TokenSourceRenderer",
]
