"""Host identity, clock and timing helpers shared by the responder."""

from __future__ import annotations

import platform
import random
import time
from dataclasses import dataclass

MDNS_BUF_LEN = 8 * 1024
HOSTNAME_LEN = 256

# Longest strings that fit the fixed-size host name buffers (terminator excluded).
_MAX_LABEL_CHARS = HOSTNAME_LEN - 1
_MAX_LOCAL_CHARS = HOSTNAME_LEN + 6 - 1

_system_random = random.SystemRandom()


@dataclass(frozen=True)
class HostIdentity:
    """The host's first label (``label``) and its ``.local`` name (``local``)."""

    label: str = ""
    local: str = ""


def get_hostname() -> HostIdentity:
    """Return the host label and ``<label>.local`` for this machine.

    Both are empty when the node name cannot be determined.
    """
    node = platform.node()
    if not node:
        return HostIdentity()
    return HostIdentity(
        label=node[:_MAX_LABEL_CHARS],
        local=f"{node}.local"[:_MAX_LOCAL_CHARS],
    )


def monotonic_time() -> int:
    """Whole seconds of a monotonic clock."""
    return int(time.monotonic())


def rand_time_delta(t: int) -> int:
    """Return ``t`` jittered by a random amount within one thirtieth of it."""
    span = t // 30
    if span <= 0:
        return t
    return t + _system_random.randrange(span) - span // 2