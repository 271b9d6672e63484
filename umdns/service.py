"""Services and host names announced by this responder."""

from __future__ import annotations

import glob
import json
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from .dns import C_DNS_SD, DnsFormatError, PacketBuilder, RRType, SrvData, compress_name
from .util import HostIdentity, get_hostname, monotonic_time

SERVICE_FILES_PATTERN = "/etc/umdns/*"
DEFAULT_ANNOUNCE_TTL = 75 * 60
LOOKUP_TIMEOUT = 60
"""Seconds during which a service is not answered again unless forced."""

_MAX_INSTANCE_NAME = 255
_MAX_TXT_CHUNK = 0xFF

SendFn = Callable[[Any, Any, bytes], None]
ReplyAFn = Callable[[Any, Any, int, str], None]

V = TypeVar("V")


@dataclass
class Service:
    """A service announced on behalf of this host."""

    id: str
    instance: str
    service: str
    hostname: str
    port: int
    txt: bytes = b""
    active: bool = True
    t: int = 0

    @property
    def instance_name(self) -> str:
        """Service instance name: ``<instance>.<service>``."""
        return f"{self.instance}.{self.service}"[:_MAX_INSTANCE_NAME]


def encode_txt(entries: Iterable[str]) -> bytes:
    """Encode TXT strings as length-prefixed chunks.

    Entries longer than 255 bytes are truncated; the result keeps the size the
    full entries would need, padded with zero bytes. An empty entry is an error.
    """
    out = bytearray()
    total = 0
    for entry in entries:
        if not isinstance(entry, str):
            raise TypeError(f"TXT entry must be a string, not {type(entry).__name__}")
        raw = entry.encode("utf-8")
        if not raw:
            raise ValueError("empty TXT entry")
        total += 1 + len(raw)
        chunk = raw[:_MAX_TXT_CHUNK]
        out.append(len(chunk))
        out += chunk
    out += bytes(total - len(out))
    return bytes(out)


class _VersionedMap(Generic[V]):
    """Keyed collection whose entries not re-added during an update are dropped on flush."""

    def __init__(self, on_change: Callable[[Optional[V], Optional[V]], None]) -> None:
        self._items: dict[str, tuple[int, V]] = {}
        self._version = 0
        self._on_change = on_change

    def begin_update(self) -> None:
        self._version += 1

    def add(self, key: str, value: V) -> None:
        previous = self._items.get(key)
        self._items[key] = (self._version, value)
        self._on_change(value, previous[1] if previous else None)

    def flush(self) -> None:
        stale = sorted(key for key, (version, _) in self._items.items() if version != self._version)
        for key in stale:
            _, value = self._items.pop(key)
            self._on_change(None, value)

    def clear(self) -> None:
        self._items.clear()

    def values(self) -> list[V]:
        return [self._items[key][1] for key in sorted(self._items)]


def _typed(data: Mapping[str, Any], key: str, kind: type) -> Any:
    value = data.get(key)
    if kind is int:
        return value if isinstance(value, int) and not isinstance(value, bool) else None
    return value if isinstance(value, kind) else None


def _default_send(iface: Any, to: Any, packet: bytes) -> None:
    iface.send(packet, to)


class ServiceRegistry:
    """Services and extra host names loaded from files and the service list."""

    def __init__(
        self,
        send: Optional[SendFn] = None,
        interfaces: Optional[Callable[[], Iterable[Any]]] = None,
        reply_a: Optional[ReplyAFn] = None,
        hostname_source: Callable[[], HostIdentity] = get_hostname,
        clock: Callable[[], int] = monotonic_time,
        announce_ttl: int = DEFAULT_ANNOUNCE_TTL,
        files_pattern: str = SERVICE_FILES_PATTERN,
    ) -> None:
        self._send = send or _default_send
        self._interfaces = interfaces or (lambda: ())
        self._reply_a = reply_a
        self._hostname_source = hostname_source
        self._clock = clock
        self.announce_ttl = announce_ttl
        self.files_pattern = files_pattern
        self.identity = hostname_source()
        self.announce = False
        self._services: _VersionedMap[Service] = _VersionedMap(self._service_changed)
        self._hostnames: _VersionedMap[str] = _VersionedMap(self._hostname_changed)

    @property
    def services(self) -> list[Service]:
        """Announced services ordered by id."""
        return self._services.values()

    @property
    def hostnames(self) -> list[str]:
        """Additional host names, in order."""
        return self._hostnames.values()

    # -- change notifications ----------------------------------------------

    def _service_changed(self, new: Optional[Service], old: Optional[Service]) -> None:
        if old is None:
            if new is not None and self.announce:
                for iface in self._interfaces():
                    new.t = 0
                    self._reply_single(iface, None, new, self.announce_ttl, True)
            return
        if new is None and self.announce:
            for iface in self._interfaces():
                self._reply_single(iface, None, old, 0, True)

    def _hostname_changed(self, new: Optional[str], old: Optional[str]) -> None:
        if self._reply_a is None:
            return
        if old is None:
            for iface in self._interfaces():
                self._reply_a(iface, None, self.announce_ttl, new)
            return
        if new is None:
            for iface in self._interfaces():
                self._reply_a(iface, None, 0, old)

    # -- packet assembly ----------------------------------------------------

    @staticmethod
    def _add_ptr(builder: PacketBuilder, name: str, host: str, ttl: int) -> None:
        try:
            data = compress_name(host)
        except DnsFormatError:
            return
        builder.add_answer(name, RRType.PTR, data, ttl)

    @staticmethod
    def _add_srv(builder: PacketBuilder, name: str, service: Service, ttl: int) -> None:
        try:
            target = compress_name(service.hostname)
        except DnsFormatError:
            return
        data = SrvData(port=service.port).pack() + target
        builder.add_answer(name, RRType.SRV, data, ttl)

    def _timeout(self, service: Service) -> int:
        now = self._clock()
        if now - service.t <= LOOKUP_TIMEOUT:
            return 0
        return now

    def _reply_single(self, iface: Any, to: Any, service: Service, ttl: int, force: bool) -> None:
        host = service.instance_name
        index = host.find("._")
        stamp = self._timeout(service)
        if index < 0:
            return
        if not force and (not service.active or not stamp):
            return
        service.t = stamp

        builder = PacketBuilder()
        self._add_ptr(builder, host[index + 1:], host, ttl)
        self._add_srv(builder, host, service, ttl)
        if service.txt:
            builder.add_answer(host, RRType.TXT, service.txt, ttl)
        self._send(iface, to, builder.to_bytes())

    # -- loading -------------------------------------------------------------

    def load_blob(self, name: str, data: Any) -> None:
        """Add the service described by ``data`` under the id ``name``."""
        if not isinstance(data, Mapping):
            return
        instance = _typed(data, "instance", str)
        service_type = _typed(data, "service", str)
        port = _typed(data, "port", int)
        txt = _typed(data, "txt", list)
        hostname = _typed(data, "hostname", str)

        if hostname is not None:
            self._hostnames.add(hostname, hostname)

        if port is None or service_type is None:
            return

        try:
            txt_data = encode_txt(txt) if txt is not None else b""
        except (TypeError, ValueError):
            return

        service = Service(
            id=name,
            instance=instance if instance is not None else self.identity.label,
            service=service_type,
            hostname=hostname if hostname is not None else self.identity.local,
            port=port & 0xFFFFFFFF,
            txt=txt_data,
        )
        self._services.add(name, service)

    def load_files(self, pattern: str) -> None:
        """Load every JSON object file matching ``pattern``; unreadable files are skipped."""
        for path in sorted(glob.glob(pattern)):
            try:
                with open(path, encoding="utf-8") as handle:
                    document = json.load(handle)
            except (OSError, ValueError):
                continue
            if not isinstance(document, dict):
                continue
            for name, value in document.items():
                self.load_blob(name, value)

    def load_service_list(self, msg: Mapping[str, Any]) -> None:
        """Load the ``mdns`` data of every running instance in a service list."""
        for entry in msg.values():
            if not isinstance(entry, Mapping):
                continue
            for key, instances in entry.items():
                if key != "instances" or not isinstance(instances, Mapping):
                    continue
                for instance in instances.values():
                    if isinstance(instance, Mapping):
                        self._load_instance(instance)

    def _load_instance(self, instance: Mapping[str, Any]) -> None:
        running = False
        for key, value in instance.items():
            if key == "running":
                running = bool(value)
            elif running and key == "data":
                if isinstance(value, Mapping):
                    for section, blobs in value.items():
                        if section != "mdns" or not isinstance(blobs, Mapping):
                            continue
                        for name, blob in blobs.items():
                            self.load_blob(name, blob)
                break

    def reload(self, msg: Optional[Mapping[str, Any]] = None, announce: bool = False) -> None:
        """Rebuild services and host names from the files and ``msg``.

        New entries are announced, vanished ones withdrawn; services are only
        announced when ``announce`` is set.
        """
        self.identity = self._hostname_source()
        self.announce = bool(announce)
        self._services.begin_update()
        self._hostnames.begin_update()
        self.load_files(self.files_pattern)
        if msg:
            self.load_service_list(msg)
        self._services.flush()
        self._hostnames.flush()

    # -- replies -------------------------------------------------------------

    def reply(
        self,
        iface: Any,
        to: Any,
        instance: Optional[str] = None,
        service_domain: Optional[str] = None,
        ttl: int = DEFAULT_ANNOUNCE_TTL,
        force: bool = False,
    ) -> None:
        """Answer for the services matching ``instance`` and ``service_domain``."""
        for service in self.services:
            if instance is not None and service.instance != instance:
                continue
            if service_domain is not None and service.service != service_domain:
                continue
            self._reply_single(iface, to, service, ttl, force)

    def announce_services(self, iface: Any, to: Any, ttl: int) -> None:
        """Send one service discovery PTR per service; nothing when ``ttl`` is 0."""
        builder = PacketBuilder()
        count = 0
        for service in self.services:
            service.t = 0
            if ttl:
                self._add_ptr(builder, C_DNS_SD, service.service, ttl)
                count += 1
        if count:
            self._send(iface, to, builder.to_bytes())

    def cleanup(self) -> None:
        """Forget every announced service."""
        self._services.clear()