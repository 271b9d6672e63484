"""Command line entry point of the responder."""

from __future__ import annotations

import getopt
import logging
import re
import sys
from dataclasses import dataclass, field
from typing import Optional

from .daemon import Daemon
from .service import DEFAULT_ANNOUNCE_TTL

USAGE_ERROR = 255
_OPTIONS = "t:i:d46n"

_log = logging.getLogger(__name__)


@dataclass
class Options:
    """Settings taken from the command line.

    ``interfaces`` holds each interface with the protocol selected when it was named.
    """

    ttl: int = DEFAULT_ANNOUNCE_TTL
    debug: int = 0
    proto: int = 0
    no_subnet: bool = False
    interfaces: list[tuple[str, int]] = field(default_factory=list)


def _leading_int(text: str) -> int:
    match = re.match(r"\s*([+-]?\d+)", text)
    return int(match.group(1)) if match else 0


def parse_args(argv: Optional[list[str]] = None) -> Options:
    """Parse options; raises getopt.GetoptError on an unknown or incomplete option."""
    if argv is None:
        argv = sys.argv[1:]
    pairs, _ = getopt.gnu_getopt(list(argv), _OPTIONS)
    options = Options()
    for flag, value in pairs:
        if flag == "-t":
            ttl = _leading_int(value)
            if ttl > 0:
                options.ttl = ttl
            else:
                _log.warning("invalid ttl")
        elif flag == "-d":
            options.debug += 1
        elif flag == "-i":
            options.interfaces.append((value, options.proto))
        elif flag == "-4":
            options.proto = 4
        elif flag == "-6":
            options.proto = 6
        elif flag == "-n":
            options.no_subnet = True
    return options


def main(argv: Optional[list[str]] = None) -> int:
    """Run the responder until it is told to stop."""
    try:
        options = parse_args(argv)
    except getopt.GetoptError as exc:
        print(f"umdns: {exc}", file=sys.stderr)
        return USAGE_ERROR

    logging.basicConfig(level=logging.DEBUG if options.debug else logging.WARNING)
    daemon = Daemon(
        announce_ttl=options.ttl,
        proto=options.proto,
        no_subnet=options.no_subnet,
        debug=options.debug,
    )
    for name, proto in options.interfaces:
        daemon.interfaces.proto = proto
        daemon.add_interface(name)
    daemon.interfaces.proto = options.proto
    daemon.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())