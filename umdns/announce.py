"""Probing for and announcing this host on an interface."""

from __future__ import annotations

from collections.abc import Callable
from enum import IntEnum
from typing import Any, Optional

from .dns import RRType

START_DELAY = 0.1
PROBE_INTERVAL = 0.25
PROBE_WAIT_DELAY = 0.5
ANNOUNCE_FACTOR = 0.8
"""Re-announce after this fraction of the announce TTL."""

Scheduler = Callable[[float, Callable[[], None]], Any]


class AnnounceState(IntEnum):
    PROBE1 = 0
    PROBE2 = 1
    PROBE3 = 2
    PROBE_WAIT = 3
    PROBE_END = 4
    ANNOUNCE = 5


class Announcer:
    """Probes for the host name on one interface, then announces it periodically.

    ``scheduler(delay, callback)`` arranges for ``callback`` to run after
    ``delay`` seconds and returns a handle with ``cancel()``.
    """

    def __init__(
        self,
        iface: Any,
        responder: Any,
        ttl: Optional[int] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.iface = iface
        self.responder = responder
        self._ttl = ttl
        self._scheduler = scheduler
        self._handle: Any = None
        self.state = AnnounceState.PROBE1

    @property
    def ttl(self) -> int:
        return self._ttl if self._ttl is not None else self.responder.announce_ttl

    def _schedule(self, delay: float) -> None:
        if self._scheduler is not None:
            self._handle = self._scheduler(delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        delay = self.step()
        if delay is not None:
            self._schedule(delay)

    def start(self) -> None:
        """Begin probing after a short delay."""
        self.stop()
        self.state = AnnounceState.PROBE1
        self._schedule(START_DELAY)

    def step(self) -> Optional[float]:
        """Run the current stage; return seconds until the next, or None to stop."""
        responder = self.responder
        local = responder.identity.local

        if self.state in (AnnounceState.PROBE1, AnnounceState.PROBE2, AnnounceState.PROBE3):
            responder.send_question(self.iface, None, local, RRType.ANY, True)
            self.state = AnnounceState(self.state + 1)
            return PROBE_INTERVAL

        if self.state == AnnounceState.PROBE_WAIT:
            self.state = AnnounceState.PROBE_END
            return PROBE_WAIT_DELAY

        if self.state == AnnounceState.PROBE_END:
            if responder.cache.host_is_known(local):
                # Someone else already owns this name.
                return None
            self.state = AnnounceState.ANNOUNCE

        ttl = self.ttl
        responder.reply_a(self.iface, None, ttl, None)
        responder.reply_a_additional(self.iface, None, ttl)
        if responder.services is not None:
            responder.services.announce_services(self.iface, None, ttl)
        return ttl * ANNOUNCE_FACTOR

    def stop(self) -> None:
        """Cancel any pending stage."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None