"""Network interfaces the responder listens on, with their sockets and addresses."""

from __future__ import annotations

import ipaddress
import socket
import struct
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Optional, Union

import psutil

from .dns import MCAST_ADDR, MCAST_ADDR6, MCAST_PORT

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

SOCKTYPE_BIT_UNICAST = 1 << 0
SOCKTYPE_BIT_IPV6 = 1 << 1

RECV_BUFFER_SIZE = 8 * 1024
_ANCILLARY_SIZE = 256
# IPv6 sources are checked against the leading bytes of the prefix only.
_IPV6_SOURCE_COMPARE_LEN = 6
_LINK_LOCAL_PREFIX = b"\xfe\x80"

_IP_PKTINFO = getattr(socket, "IP_PKTINFO", None)
_IP_RECVTTL = getattr(socket, "IP_RECVTTL", None)
_IPV6_PKTINFO = getattr(socket, "IPV6_PKTINFO", None)
_IPV6_RECVPKTINFO = getattr(socket, "IPV6_RECVPKTINFO", None)
_IPV6_RECVHOPLIMIT = getattr(socket, "IPV6_RECVHOPLIMIT", None)
_IPV6_HOPLIMIT = getattr(socket, "IPV6_HOPLIMIT", None)
_IPV6_JOIN_GROUP = getattr(socket, "IPV6_JOIN_GROUP", getattr(socket, "IPV6_ADD_MEMBERSHIP", None))
_IPV6_LEAVE_GROUP = getattr(socket, "IPV6_LEAVE_GROUP", getattr(socket, "IPV6_DROP_MEMBERSHIP", None))


class SocketType(IntEnum):
    """Kind of socket an interface entry uses."""

    MC_IPV4 = 0
    UC_IPV4 = SOCKTYPE_BIT_UNICAST
    MC_IPV6 = SOCKTYPE_BIT_IPV6
    UC_IPV6 = SOCKTYPE_BIT_IPV6 | SOCKTYPE_BIT_UNICAST

    @property
    def multicast(self) -> bool:
        return not self & SOCKTYPE_BIT_UNICAST

    @property
    def ipv6(self) -> bool:
        return bool(self & SOCKTYPE_BIT_IPV6)

    @property
    def unicast(self) -> "SocketType":
        """The unicast counterpart of this socket type."""
        return SocketType(self | SOCKTYPE_BIT_UNICAST)


@dataclass(frozen=True)
class AddressEntry:
    """An interface address together with its netmask."""

    address: IPAddress
    mask: IPAddress


@dataclass(eq=False)
class Interface:
    """One (interface, socket type) pair the responder is active on."""

    name: str
    stype: SocketType
    ifindex: int
    addresses: list[AddressEntry] = field(default_factory=list)
    need_multicast: bool = False
    socket: Any = field(default=None, repr=False)

    @property
    def id(self) -> str:
        return f"{int(self.stype)}_{self.name}"

    @property
    def multicast(self) -> bool:
        return self.stype.multicast

    @property
    def ipv6(self) -> bool:
        return self.stype.ipv6

    def _destination(self, to: Any) -> tuple:
        if self.ipv6:
            host = MCAST_ADDR6 if self.multicast else to[0]
            return (host, MCAST_PORT, 0, self.ifindex)
        if self.multicast:
            return (MCAST_ADDR, MCAST_PORT)
        return (to[0], to[1])

    def _ancillary(self) -> list[tuple[int, int, bytes]]:
        if self.ipv6:
            if _IPV6_PKTINFO is None:
                return []
            info = struct.pack("@16sI", bytes(16), self.ifindex)
            return [(socket.IPPROTO_IPV6, _IPV6_PKTINFO, info)]
        if _IP_PKTINFO is None:
            return []
        info = struct.pack("@i4s4s", self.ifindex, bytes(4), bytes(4))
        return [(socket.IPPROTO_IP, _IP_PKTINFO, info)]

    def send(self, packet: bytes, to: Any = None) -> int:
        """Send ``packet`` out of this interface; multicast interfaces ignore ``to``.

        Raises ValueError when a unicast interface is given no destination.
        """
        if not self.multicast and to is None:
            raise ValueError("no destination address for unicast interface")
        if self.socket is None:
            raise OSError(f"interface {self.name} has no open socket")
        return self.socket.sendmsg([bytes(packet)], self._ancillary(), 0, self._destination(to))


def _packed(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if hasattr(value, "packed"):
        return value.packed
    return ipaddress.ip_address(str(value).split("%", 1)[0]).packed


def valid_source(address: Any, mask: Any, source: Any, no_subnet: bool = False) -> bool:
    """True when ``source`` lies in the subnet of ``address``/``mask``, or subnets are off."""
    if no_subnet:
        return True
    addr, netmask, src = _packed(address), _packed(mask), _packed(source)
    if len(addr) != len(src) or len(netmask) != len(addr):
        raise ValueError("address, mask and source must be of the same family")
    return all((a & m) == (s & m) for a, m, s in zip(addr, netmask, src))


def collect_addresses(name: str, proto: int = 0) -> tuple[list[AddressEntry], list[AddressEntry]]:
    """IPv4 addresses and link-local IPv6 addresses of interface ``name``.

    ``proto`` of 4 or 6 restricts the result to that family; 0 keeps both.
    """
    v4: list[AddressEntry] = []
    v6: list[AddressEntry] = []
    for snic in psutil.net_if_addrs().get(name, []):
        if snic.family == socket.AF_INET:
            if proto and proto != 4:
                continue
            mask = snic.netmask or "255.255.255.255"
            v4.append(AddressEntry(ipaddress.IPv4Address(snic.address), ipaddress.IPv4Address(mask)))
        elif snic.family == socket.AF_INET6:
            if proto and proto != 6:
                continue
            address = ipaddress.IPv6Address(snic.address.split("%", 1)[0])
            if address.packed[:2] != _LINK_LOCAL_PREFIX:
                continue
            mask_text = (snic.netmask or "ffff:ffff:ffff:ffff:ffff:ffff:ffff:ffff").split("/", 1)[0]
            v6.append(AddressEntry(address, ipaddress.IPv6Address(mask_text)))
    return v4, v6


def _setopt(sock: Any, level: int, option: Optional[int], value: Any) -> None:
    if option is None:
        return
    try:
        sock.setsockopt(level, option, value)
    except OSError:
        pass


def open_socket(stype: SocketType) -> tuple[Any, bool]:
    """Open and bind the socket for ``stype``.

    Returns the socket and whether it had to share the port (and so needs
    multicast replies). Raises OSError when it cannot be bound.
    """
    stype = SocketType(stype)
    family = socket.AF_INET6 if stype.ipv6 else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_DGRAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    port = 0
    if stype == SocketType.MC_IPV4:
        _setopt(sock, socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 255)
        _setopt(sock, socket.IPPROTO_IP, socket.IP_TTL, 255)
        _setopt(sock, socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 0)
        port = MCAST_PORT
    elif stype == SocketType.MC_IPV6:
        _setopt(sock, socket.IPPROTO_IPV6, socket.IPV6_MULTICAST_HOPS, 255)
        _setopt(sock, socket.IPPROTO_IPV6, socket.IPV6_UNICAST_HOPS, 255)
        _setopt(sock, socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        _setopt(sock, socket.IPPROTO_IPV6, socket.IPV6_MULTICAST_LOOP, 0)
        port = MCAST_PORT

    local = ("::", port) if stype.ipv6 else ("0.0.0.0", port)
    shared = False
    try:
        sock.bind(local)
    except OSError:
        _setopt(sock, socket.SOL_SOCKET, getattr(socket, "SO_REUSEPORT", None), 1)
        shared = True
        try:
            sock.bind(local)
        except OSError:
            sock.close()
            raise

    if stype.ipv6:
        _setopt(sock, socket.IPPROTO_IPV6, _IPV6_RECVPKTINFO, 1)
        _setopt(sock, socket.IPPROTO_IPV6, _IPV6_RECVHOPLIMIT, 1)
    else:
        _setopt(sock, socket.IPPROTO_IP, _IP_PKTINFO, 1)
        _setopt(sock, socket.IPPROTO_IP, _IP_RECVTTL, 1)
    return sock, shared


PacketHandler = Callable[[Interface, Any, int, bytes], None]
IfaceHook = Callable[[Interface], None]


class InterfaceManager:
    """The set of active interfaces, their shared sockets and their lifecycle."""

    def __init__(
        self,
        handler: Optional[PacketHandler] = None,
        on_start: Optional[IfaceHook] = None,
        on_stop: Optional[IfaceHook] = None,
        cleanup: Optional[IfaceHook] = None,
        proto: int = 0,
        no_subnet: bool = False,
        address_source: Callable[[str, int], tuple[list[AddressEntry], list[AddressEntry]]] = collect_addresses,
        index_source: Callable[[str], int] = socket.if_nametoindex,
        socket_factory: Callable[[SocketType], tuple[Any, bool]] = open_socket,
    ) -> None:
        self.handler = handler
        self.on_start = on_start
        self.on_stop = on_stop
        self.cleanup = cleanup
        self.proto = proto
        self.no_subnet = no_subnet
        self._address_source = address_source
        self._index_source = index_source
        self._socket_factory = socket_factory
        self._sockets: dict[SocketType, Any] = {}
        self._entries: dict[str, tuple[int, Interface]] = {}
        self._version = 0

    # -- views -------------------------------------------------------------

    @property
    def interfaces(self) -> list[Interface]:
        """Active interfaces ordered by id."""
        return [self._entries[key][1] for key in sorted(self._entries)]

    def __iter__(self) -> Iterator[Interface]:
        return iter(self.interfaces)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def sockets(self) -> dict[SocketType, Any]:
        """Open sockets by type."""
        return dict(self._sockets)

    def get(self, name: str, stype: SocketType) -> Optional[Interface]:
        entry = self._entries.get(f"{int(stype)}_{name}")
        return entry[1] if entry else None

    def lookup(self, ifindex: int, stype: SocketType) -> Optional[Interface]:
        for iface in self.interfaces:
            if iface.ifindex == ifindex and iface.stype == stype:
                return iface
        return None

    # -- lifecycle ---------------------------------------------------------

    def _join_group(self, iface: Interface) -> None:
        sock = self._sockets.get(SocketType.MC_IPV6 if iface.ipv6 else SocketType.MC_IPV4)
        if sock is None:
            return
        if iface.ipv6:
            mreq = struct.pack("@16sI", ipaddress.IPv6Address(MCAST_ADDR6).packed, iface.ifindex)
            _setopt(sock, socket.IPPROTO_IPV6, _IPV6_LEAVE_GROUP, mreq)
            _setopt(sock, socket.IPPROTO_IPV6, _IPV6_JOIN_GROUP, mreq)
        else:
            local = iface.addresses[0].address.packed if iface.addresses else bytes(4)
            mreq = struct.pack("@4s4si", ipaddress.IPv4Address(MCAST_ADDR).packed, local, iface.ifindex)
            # Leave first: some drivers refuse to rejoin a group they think they are in.
            _setopt(sock, socket.IPPROTO_IP, socket.IP_DROP_MEMBERSHIP, mreq)
            _setopt(sock, socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)

    def _start(self, iface: Interface) -> None:
        if not iface.multicast:
            return
        self._join_group(iface)
        if self.on_start is not None:
            self.on_start(iface)

    def _free(self, iface: Interface) -> None:
        if self.cleanup is not None:
            self.cleanup(iface)
        if self.on_stop is not None:
            self.on_stop(iface)

    def _insert(self, new: Interface) -> None:
        previous = self._entries.get(new.id)
        if previous is None:
            self._entries[new.id] = (self._version, new)
            self._start(new)
            return
        old = previous[1]
        self._entries[new.id] = (self._version, old)
        equal = old.ifindex == new.ifindex and old.addresses == new.addresses
        if not equal and self.cleanup is not None:
            self.cleanup(old)
        old.addresses = new.addresses
        old.ifindex = new.ifindex
        if not equal:
            self._start(old)

    def _socket_for(self, stype: SocketType) -> tuple[Any, bool]:
        if stype in self._sockets:
            return self._sockets[stype], False
        sock, shared = self._socket_factory(stype)
        self._sockets[stype] = sock
        return sock, shared

    def _add_one(self, name: str, stype: SocketType, addresses: list[AddressEntry]) -> None:
        try:
            sock, shared = self._socket_for(stype)
            ifindex = self._index_source(name)
        except OSError:
            return
        if not ifindex:
            return
        self._insert(
            Interface(
                name=name,
                stype=stype,
                ifindex=ifindex,
                addresses=list(addresses),
                need_multicast=shared,
                socket=sock,
            )
        )

    def add(self, name: str) -> bool:
        """Activate ``name`` on every socket type its addresses allow.

        Returns False when the interface has no usable address.
        """
        v4, v6 = self._address_source(name, self.proto)
        if v4:
            self._add_one(name, SocketType.UC_IPV4, v4)
            self._add_one(name, SocketType.MC_IPV4, v4)
        if v6:
            self._add_one(name, SocketType.UC_IPV6, v6)
            self._add_one(name, SocketType.MC_IPV6, v6)
        return bool(v4 or v6)

    def begin_update(self) -> None:
        """Start a new generation; interfaces not added again are dropped by flush."""
        self._version += 1

    def flush(self) -> None:
        """Drop interfaces not added since the last begin_update."""
        stale = sorted(key for key, (version, _) in self._entries.items() if version != self._version)
        for key in stale:
            _, iface = self._entries.pop(key)
            self._free(iface)

    # -- traffic -----------------------------------------------------------

    def handle_datagram(self, stype: SocketType, data: bytes, sender: Any, ifindex: int) -> bool:
        """Pass a received datagram to the handler if its source is acceptable."""
        iface = self.lookup(ifindex, SocketType(stype))
        if iface is None:
            return False
        source = _packed(sender[0])
        for entry in iface.addresses:
            address, mask, src = entry.address.packed, entry.mask.packed, source
            if iface.ipv6:
                address = address[:_IPV6_SOURCE_COMPARE_LEN]
                mask = mask[:_IPV6_SOURCE_COMPARE_LEN]
                src = src[:_IPV6_SOURCE_COMPARE_LEN]
            if len(src) == len(address) and valid_source(address, mask, src, self.no_subnet):
                break
        else:
            return False
        if self.handler is not None:
            self.handler(iface, sender, sender[1], bytes(data))
        return True

    def receive(self, stype: SocketType) -> bool:
        """Read one datagram from the socket of ``stype`` and dispatch it."""
        stype = SocketType(stype)
        sock = self._sockets.get(stype)
        if sock is None:
            return False
        try:
            data, ancdata, _flags, sender = sock.recvmsg(RECV_BUFFER_SIZE, _ANCILLARY_SIZE)
        except OSError:
            return False
        ifindex: Optional[int] = None
        for _level, ctype, cdata in ancdata:
            if stype.ipv6:
                if _IPV6_PKTINFO is not None and ctype == _IPV6_PKTINFO:
                    ifindex = struct.unpack_from("@I", cdata, 16)[0]
                elif ctype != _IPV6_HOPLIMIT:
                    return False
            else:
                if _IP_PKTINFO is not None and ctype == _IP_PKTINFO:
                    ifindex = struct.unpack_from("@i", cdata, 0)[0]
                elif ctype != socket.IP_TTL:
                    return False
        if ifindex is None:
            return False
        return self.handle_datagram(stype, data, sender, ifindex)

    def shutdown(self, farewell: Optional[IfaceHook] = None) -> None:
        """Say goodbye on every multicast interface, then close all sockets."""
        for iface in self.interfaces:
            if iface.multicast and farewell is not None:
                farewell(iface)
        for sock in self._sockets.values():
            try:
                sock.close()
            except OSError:
                pass
        self._sockets.clear()
        for iface in self.interfaces:
            iface.socket = None