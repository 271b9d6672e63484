"""Control interface: configuration, queries and views of the responder's state."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import Any, Optional

from .dns import C_DNS_SD, RRType
from .interface import SocketType

ServiceListFn = Callable[[], Optional[Mapping[str, Any]]]
NotifyFn = Callable[[str], None]


class ControlError(Exception):
    """A control request that cannot be carried out."""

    INVALID_ARGUMENT = "invalid_argument"
    NOT_FOUND = "not_found"

    def __init__(self, status: str, message: str) -> None:
        super().__init__(message)
        self.status = status


def _txt_strings(data: bytes) -> list[str]:
    strings: list[str] = []
    offset = 0
    while offset < len(data):
        length = data[offset]
        offset += 1
        if not length:
            break
        chunk = data[offset:offset + length].split(b"\0", 1)[0]
        strings.append(chunk.decode("utf-8", "replace"))
        offset += length
    return strings


class Control:
    """Operations offered to administrators and other programs."""

    def __init__(
        self,
        responder: Any,
        interfaces: Any,
        services: Any = None,
        cache: Any = None,
        service_list: Optional[ServiceListFn] = None,
        notify: Optional[NotifyFn] = None,
    ) -> None:
        self.responder = responder
        self.interfaces = interfaces
        self.services = services if services is not None else responder.services
        self.cache = cache if cache is not None else responder.cache
        self._service_list = service_list
        self._notify = notify

    def set_config(self, interfaces: Any, keep: bool = False) -> None:
        """Listen on ``interfaces``; without ``keep`` all others are dropped."""
        if not isinstance(interfaces, (list, tuple)) or not all(
            isinstance(name, str) for name in interfaces
        ):
            raise ControlError(ControlError.INVALID_ARGUMENT, "interfaces must be a list of names")
        if not keep:
            self.interfaces.begin_update()
            if self._notify is not None:
                self._notify("set_config")
        for name in interfaces:
            self.interfaces.add(name)
        if not keep:
            self.interfaces.flush()

    def _multicast_interfaces(self, interface: Optional[str]) -> tuple[Any, Any]:
        if interface is None:
            return None, None
        v4 = self.interfaces.get(interface, SocketType.MC_IPV4)
        v6 = self.interfaces.get(interface, SocketType.MC_IPV6)
        if v4 is None and v6 is None:
            raise ControlError(ControlError.NOT_FOUND, f"unknown interface {interface}")
        return v4, v6

    def query(
        self, question: str = C_DNS_SD, interface: Optional[str] = None, rtype: int = RRType.ANY
    ) -> None:
        """Send ``question`` on ``interface``, or on every interface when it is None."""
        v4, v6 = self._multicast_interfaces(interface)
        targets = [iface for iface in (v4, v6) if iface is not None]
        if not targets:
            targets = list(self.interfaces)
        for iface in targets:
            self.responder.send_question(iface, None, question, rtype, True)

    def fetch(
        self, question: str = C_DNS_SD, interface: Optional[str] = None, rtype: int = RRType.ANY
    ) -> dict[str, Any]:
        """Cached records for ``question`` on ``interface``, with what they point to."""
        v4, v6 = self._multicast_interfaces(interface)
        if v4 is None and v6 is None:
            raise ControlError(ControlError.INVALID_ARGUMENT, "an interface is required")
        iface = v4 if v4 is not None else v6
        return {"records": self.cache.dump_recursive(question, rtype, iface)}

    def browse(
        self, service: Optional[str] = None, array: bool = False, address: bool = True
    ) -> dict[str, dict[str, Any]]:
        """Discovered services grouped by type, then by instance."""
        result: dict[str, dict[str, Any]] = {}
        for cached in self.cache.services:
            label = cached.key
            index = label.find(".local")
            if index >= 0:
                label = label[:index]
            if label in ("_tcp", "_udp"):
                continue
            if service is not None and label != service:
                continue
            instance = cached.entry
            index = instance.find("._")
            if index >= 0:
                instance = instance[:index]

            table: dict[str, Any] = {}
            if cached.iface is not None:
                table["iface"] = cached.iface.name
            records = self.cache.dump_records(cached.entry, array)
            table.update(records)
            hostname = records.get("host", instance + ".local")
            if address:
                table.update(self.cache.dump_records(hostname, array))
            result.setdefault(label, {})[instance] = table
        return result

    def announcements(self) -> dict[str, dict[str, Any]]:
        """Services this host announces, grouped by service type."""
        result: dict[str, dict[str, Any]] = {}
        for announced in self.services.services:
            if not announced.id or not announced.service or not announced.port:
                continue
            entry: dict[str, Any] = {"port": announced.port}
            if announced.txt:
                entry["txt"] = _txt_strings(announced.txt)
            result.setdefault(announced.service, {})[announced.id] = entry
        return result

    def update(self) -> None:
        """Ask the network again for every known service."""
        self.cache.update()

    def hosts(self, array: bool = False) -> dict[str, dict[str, Any]]:
        """Addresses of every host with a cached A or AAAA record."""
        result: dict[str, dict[str, Any]] = {}
        for record in self.cache.records:
            if record.rtype not in (RRType.A, RRType.AAAA):
                continue
            if record.name in result:
                continue
            result[record.name] = self.cache.dump_records(record.name, array)
        return result

    def reload(self) -> None:
        """Reload announced services and announce the changes."""
        msg = self._service_list() if self._service_list is not None else None
        self.services.reload(msg, announce=True)
        self.responder.identity = self.services.identity