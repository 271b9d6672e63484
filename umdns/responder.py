"""Answering mDNS questions and feeding received responses into the cache."""

from __future__ import annotations

import ipaddress
import logging
import socket
from collections.abc import Callable, Iterable
from typing import Any, Optional, Union

import psutil

from .cache import Cache
from .dns import (
    C_DNS_SD,
    CLASS_IN,
    MCAST_PORT,
    Answer,
    DnsFormatError,
    PacketBuilder,
    PacketReader,
    Question,
    RRType,
    compress_name,
)
from .service import DEFAULT_ANNOUNCE_TTL
from .util import HostIdentity, get_hostname

QUERY_BATCH_SIZE = 16
"""Questions sent together in one query packet."""
QUERY_DELAY = 0.1
"""Seconds queued queries wait before they are sent."""

IPV4_REVERSE_SUFFIX = ".in-addr.arpa"
IPV6_REVERSE_SUFFIX = ".ip6.arpa"

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
SendFn = Callable[[Any, Any, bytes], None]
AddressSource = Callable[[str], Iterable[Any]]
ScheduleFn = Callable[[float, Callable[[], None]], Any]

_log = logging.getLogger(__name__)


def interface_addresses(name: str) -> list[IPAddress]:
    """Every IPv4 and IPv6 address configured on interface ``name``."""
    result: list[IPAddress] = []
    for snic in psutil.net_if_addrs().get(name, []):
        if snic.family not in (socket.AF_INET, socket.AF_INET6):
            continue
        try:
            result.append(ipaddress.ip_address(snic.address.split("%", 1)[0]))
        except ValueError:
            continue
    return result


def _default_send(iface: Any, to: Any, packet: bytes) -> None:
    iface.send(packet, to)


def is_reverse_query(name: Optional[str], suffix: Optional[str]) -> bool:
    """True when ``name`` ends with ``suffix`` (compared case-sensitively)."""
    if name is None or suffix is None:
        return False
    return name.endswith(suffix)


def match_ipv4_reverse(reverse: str, address: Any) -> bool:
    """True when the reversed dotted quad ``reverse`` names ``address``."""
    try:
        addr = ipaddress.ip_address(str(address))
    except ValueError:
        return False
    if addr.version != 4:
        return False
    parts = reverse.split(".")[:4]
    if len(parts) < 4:
        return False
    try:
        octets = [int(part) for part in parts]
    except ValueError:
        return False
    return list(reversed(octets)) == list(addr.packed)


def match_ipv6_reverse(reverse: str, address: Any) -> bool:
    """True when the reversed nibble string ``reverse`` names ``address``."""
    try:
        addr = ipaddress.ip_address(str(address).split("%", 1)[0])
    except ValueError:
        return False
    if addr.version != 6:
        return False
    nibbles = "".join(char for char in reversed(reverse) if char != ".")
    groups = [nibbles[start:start + 4] for start in range(0, len(nibbles), 4)]
    try:
        candidate = ipaddress.IPv6Address(":".join(groups))
    except ValueError:
        return False
    return candidate == addr


class Responder:
    """Builds and sends queries and replies, and handles received packets."""

    def __init__(
        self,
        cache: Optional[Cache] = None,
        services: Any = None,
        interfaces: Iterable[Any] = (),
        identity: Optional[HostIdentity] = None,
        announce_ttl: int = DEFAULT_ANNOUNCE_TTL,
        send: Optional[SendFn] = None,
        address_source: AddressSource = interface_addresses,
        schedule_flush: Optional[ScheduleFn] = None,
    ) -> None:
        self.cache = cache if cache is not None else Cache(
            query=self.query, send_question=self.send_question
        )
        self.services = services
        self.interfaces = interfaces
        self.identity = identity if identity is not None else get_hostname()
        self.announce_ttl = announce_ttl
        self._send = send or _default_send
        self._address_source = address_source
        self._schedule_flush = schedule_flush
        self._pending: list[tuple[str, int]] = []
        self._flush_scheduled = False

    @property
    def pending_queries(self) -> list[tuple[str, int]]:
        """Queued (name, type) queries not yet sent."""
        return list(self._pending)

    # -- sending -------------------------------------------------------------

    def _transmit(
        self,
        iface: Any,
        to: Any,
        builder: PacketBuilder,
        query: bool = False,
        multicast: Optional[bool] = None,
    ) -> None:
        if query:
            if multicast is None:
                multicast = bool(getattr(iface, "need_multicast", False))
            builder.set_multicast(bool(multicast))
        try:
            self._send(iface, to, builder.to_bytes())
        except (OSError, ValueError) as exc:
            _log.warning("failed to send answer: %s", exc)

    def send_question(
        self, iface: Any, to: Any, name: str, rtype: int, multicast: Optional[bool] = None
    ) -> None:
        """Send one question; ``multicast`` None follows the interface's need."""
        builder = PacketBuilder()
        builder.add_question(name, rtype)
        self._transmit(iface, to, builder, query=True, multicast=multicast)

    def query(self, name: str, rtype: int) -> None:
        """Queue a question for every interface; duplicates are ignored."""
        entry = (name, int(rtype))
        if entry in self._pending:
            return
        self._pending.append(entry)
        if len(self._pending) > QUERY_BATCH_SIZE:
            self.flush_queries()
        if self._pending and not self._flush_scheduled and self._schedule_flush is not None:
            self._flush_scheduled = True
            self._schedule_flush(QUERY_DELAY, self.flush_queries)

    def flush_queries(self) -> None:
        """Send every queued question, in batches, on every interface."""
        self._flush_scheduled = False
        pending = sorted(self._pending, key=lambda entry: entry[0].encode("utf-8"))
        self._pending = []
        for start in range(0, len(pending), QUERY_BATCH_SIZE):
            builder = PacketBuilder()
            for name, rtype in pending[start:start + QUERY_BATCH_SIZE]:
                builder.add_question(name, rtype)
            for iface in list(self.interfaces):
                self._transmit(iface, None, builder, query=True)

    def _addresses(self, iface: Any) -> list[IPAddress]:
        try:
            raw = list(self._address_source(iface.name))
        except OSError:
            return []
        result: list[IPAddress] = []
        for value in raw:
            try:
                result.append(ipaddress.ip_address(str(value).split("%", 1)[0]))
            except ValueError:
                continue
        return result

    def _hostnames(self) -> list[str]:
        if self.services is None:
            return []
        return list(self.services.hostnames)

    def reply_a(self, iface: Any, to: Any, ttl: int, hostname: Optional[str] = None) -> None:
        """Answer with every address of ``iface`` for ``hostname`` (default: this host)."""
        if hostname is None:
            hostname = self.identity.local
        builder = PacketBuilder()
        for address in self._addresses(iface):
            rtype = RRType.A if address.version == 4 else RRType.AAAA
            builder.add_answer(hostname, rtype, address.packed, ttl)
        self._transmit(iface, to, builder)

    def reply_a_additional(self, iface: Any, to: Any, ttl: int) -> None:
        """Answer with the addresses of ``iface`` for every extra host name."""
        for hostname in self._hostnames():
            self.reply_a(iface, to, ttl, hostname)

    def _reply_reverse(
        self,
        iface: Any,
        to: Any,
        ttl: int,
        name: str,
        reverse: str,
        version: int,
        matcher: Callable[[str, Any], bool],
    ) -> None:
        builder = PacketBuilder()
        for address in self._addresses(iface):
            if address.version != version or not matcher(reverse, address):
                continue
            try:
                target = compress_name(self.identity.local)
            except DnsFormatError:
                continue
            builder.add_answer(name, RRType.PTR, target, ttl)
        self._transmit(iface, to, builder)

    # -- receiving -----------------------------------------------------------

    def _unicast_counterpart(self, iface: Any) -> Any:
        lookup = getattr(self.interfaces, "get", None)
        if lookup is None:
            return None
        return lookup(iface.name, iface.stype.unicast)

    def _parse_question(self, iface: Any, sender: Any, question: Question) -> None:
        is_unicast = question.unicast
        to = None
        if is_unicast:
            to = sender
            if iface.multicast:
                iface = self._unicast_counterpart(iface)
                if iface is None:
                    return

        name = question.name
        ttl = self.announce_ttl

        if question.rtype == RRType.ANY:
            if name.lower() == self.identity.local.lower():
                self.reply_a(iface, to, ttl, None)
                self.reply_a_additional(iface, to, ttl)
                if self.services is not None:
                    self.services.reply(iface, to, None, None, ttl, is_unicast)
        elif question.rtype == RRType.PTR:
            self._parse_ptr_question(iface, to, name, ttl, is_unicast)
        elif question.rtype in (RRType.A, RRType.AAAA):
            index = name.lower().find(".local")
            label = name[:index] if index >= 0 else name
            if label.lower() == self.identity.label.lower():
                self.reply_a(iface, to, ttl, None)
            else:
                for hostname in self._hostnames():
                    if hostname.lower() == name.lower():
                        self.reply_a(iface, to, ttl, hostname)

    def _parse_ptr_question(
        self, iface: Any, to: Any, name: str, ttl: int, is_unicast: bool
    ) -> None:
        if is_reverse_query(name, IPV4_REVERSE_SUFFIX):
            reverse = name[:name.find(IPV4_REVERSE_SUFFIX)]
            self._reply_reverse(iface, to, ttl, name, reverse, 4, match_ipv4_reverse)
            return
        if is_reverse_query(name, IPV6_REVERSE_SUFFIX):
            reverse = name[:name.find(IPV6_REVERSE_SUFFIX)]
            self._reply_reverse(iface, to, ttl, name, reverse, 6, match_ipv6_reverse)
            return
        if self.services is None:
            return
        if name.lower() == C_DNS_SD.lower():
            self.services.announce_services(iface, to, ttl)
        elif name.startswith("_"):
            self.services.reply(iface, to, None, name, ttl, is_unicast)
        elif "." in name:
            # The first dot separates the instance name from the service.
            instance, _, service_domain = name.partition(".")
            self.services.reply(iface, to, instance, service_domain, ttl, is_unicast)

    def _cache_answer(self, iface: Any, sender: Any, packet: bytes, answer: Answer) -> bool:
        if answer.record_class != CLASS_IN:
            return False
        self.cache.answer(iface, sender, packet, answer.name, answer, answer.rdata, answer.flush)
        return True

    def handle_packet(self, iface: Any, sender: Any, port: int, data: bytes) -> None:
        """Answer the questions of a received packet and cache its records.

        Malformed packets are dropped at the first bad part.
        """
        data = bytes(data)
        reader = PacketReader(data)
        try:
            header = reader.read_header()
        except DnsFormatError:
            return

        if header.questions and not iface.multicast and port != MCAST_PORT:
            # Unicast questions must come from the mDNS port.
            return

        for _ in range(header.questions):
            try:
                question = reader.read_question()
            except DnsFormatError:
                return
            if not header.is_response:
                self._parse_question(iface, sender, question)

        if not header.is_response:
            return

        for _ in range(header.answers + header.authority + header.additional):
            try:
                answer = reader.read_answer()
            except DnsFormatError:
                return
            if not self._cache_answer(iface, sender, data, answer):
                return