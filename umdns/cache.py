"""Cache of records and services learned from mDNS responses."""

from __future__ import annotations

import ipaddress
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any, Optional

from .dns import (
    C_DNS_SD,
    Answer,
    DnsFormatError,
    RRType,
    SrvData,
    expand_name,
    type_string,
)
from .util import monotonic_time

GC_INTERVAL = 10
"""Seconds between two garbage collection passes."""

QueryFn = Callable[[str, int], None]
SendQuestionFn = Callable[[Any, Any, str, int, bool], None]


@dataclass
class CacheService:
    """A service instance discovered through a PTR record."""

    entry: str
    key: str
    host: Optional[str]
    ttl: int
    time: int
    iface: Any = None
    refresh: int = 50


@dataclass
class CacheRecord:
    """A cached resource record."""

    name: str
    rtype: int
    ttl: int
    time: int
    iface: Any = None
    sender: Any = None
    port: int = 0
    rdata: bytes = b""
    txt: Optional[list[str]] = None
    target: Optional[str] = None
    srv: Optional[SrvData] = None
    refresh: int = 50

    @property
    def address(self) -> Optional[str]:
        """Printable address of an A or AAAA record."""
        if self.rtype == RRType.A and len(self.rdata) == 4:
            return str(ipaddress.IPv4Address(self.rdata))
        if self.rtype == RRType.AAAA and len(self.rdata) == 16:
            return str(ipaddress.IPv6Address(self.rdata))
        return None


def _is_expired(now: int, stamp: int, ttl: int, frac: int) -> bool:
    return now - stamp >= ttl * frac // 100


def _parse_txt(rdata: bytes) -> list[str]:
    entries: list[str] = []
    pos = 0
    while pos < len(rdata):
        length = rdata[pos]
        if length == 0:
            break
        chunk = rdata[pos + 1:pos + 1 + length]
        for piece in chunk.split(b"\0"):
            if not piece:
                return entries
            entries.append(piece.decode("utf-8", "replace"))
        pos += 1 + length
    return entries


def _service_key(entry: str) -> str:
    index = entry.find("._")
    return entry[index + 1:] if index >= 0 else entry


class Cache:
    """Records and services seen on the network, with expiry and refresh."""

    def __init__(
        self,
        query: Optional[QueryFn] = None,
        send_question: Optional[SendQuestionFn] = None,
        clock: Callable[[], int] = monotonic_time,
    ) -> None:
        self._query = query
        self._send_question = send_question
        self._clock = clock
        self._records: dict[str, list[CacheRecord]] = {}
        self._services: dict[str, list[CacheService]] = {}

    # -- views -------------------------------------------------------------

    @property
    def records(self) -> list[CacheRecord]:
        """All records, ordered case-insensitively by name."""
        return [r for key in sorted(self._records) for r in self._records[key]]

    @property
    def services(self) -> list[CacheService]:
        """All services, ordered case-insensitively by service type."""
        return [s for key in sorted(self._services) for s in self._services[key]]

    def records_for(self, name: str) -> list[CacheRecord]:
        """Records whose name is exactly ``name``, oldest first."""
        return [r for r in self._records.get(name.lower(), []) if r.name == name]

    def _run(self, name: str) -> list[CacheRecord]:
        bucket = self._records.get(name.lower(), [])
        if not bucket:
            return []
        first = bucket[0].name
        return [r for r in bucket if r.name == first]

    # -- mutation helpers --------------------------------------------------

    def _remove_record(self, record: CacheRecord) -> None:
        key = record.name.lower()
        bucket = self._records.get(key, [])
        if record in bucket:
            bucket.remove(record)
        if not bucket:
            self._records.pop(key, None)

    def _remove_service(self, service: CacheService) -> None:
        key = service.key.lower()
        bucket = self._services.get(key, [])
        if service in bucket:
            bucket.remove(service)
        if not bucket:
            self._services.pop(key, None)

    def _ask(self, name: str, rtype: int) -> None:
        if self._query is not None:
            self._query(name, rtype)

    def _refresh_service(self, service: CacheService) -> None:
        self._ask(service.entry, RRType.PTR)
        if not service.host:
            return
        self._ask(service.host, RRType.A)
        self._ask(service.host, RRType.AAAA)

    def _service(self, iface: Any, entry: str, host_len: int, ttl: int) -> CacheService:
        now = self._clock()
        for service in self.services:
            if service.entry == entry:
                service.refresh = 50
                service.time = now
                service.ttl = ttl
                return service
        host = entry[:host_len] + ".local" if host_len else None
        service = CacheService(
            entry=entry, key=_service_key(entry), host=host, ttl=ttl, time=now, iface=iface
        )
        self._services.setdefault(service.key.lower(), []).append(service)
        self._refresh_service(service)
        return service

    def _find(self, name: str, rtype: int, port: int, rdata: bytes) -> Optional[CacheRecord]:
        for record in self.records_for(name):
            if record.rtype != rtype:
                continue
            if rtype in (RRType.TXT, RRType.SRV):
                return record
            if record.port != port:
                continue
            if not record.rdata or not rdata or record.rdata != rdata:
                continue
            return record
        return None

    # -- public operations -------------------------------------------------

    def gc(self) -> None:
        """Expire stale entries and re-query those due for refresh."""
        now = self._clock()
        for record in self.records:
            if not _is_expired(now, record.time, record.ttl, record.refresh):
                continue
            if record.rtype not in (RRType.A, RRType.AAAA):
                if _is_expired(now, record.time, record.ttl, 100):
                    self._remove_record(record)
                continue
            if record.refresh >= 100:
                self._remove_record(record)
                continue
            record.refresh += 50
            if self._send_question is not None:
                self._send_question(record.iface, record.sender, record.name, record.rtype, False)

        for service in self.services:
            if not service.host:
                continue
            if not _is_expired(now, service.time, service.ttl, service.refresh):
                continue
            if service.refresh >= 100:
                self._remove_service(service)
                continue
            service.refresh += 50
            self._refresh_service(service)

    def cleanup(self, iface: Any = None) -> None:
        """Drop everything learned on ``iface``, or everything when it is None."""
        for service in self.services:
            if iface is None or service.iface is iface:
                self._remove_service(service)
        for record in self.records:
            if iface is None or record.iface is iface:
                self._remove_record(record)

    def update(self) -> None:
        """Query service discovery and refresh every known service."""
        self._ask(C_DNS_SD, RRType.ANY)
        self._ask(C_DNS_SD, RRType.PTR)
        for service in self.services:
            self._refresh_service(service)

    def answer(
        self,
        iface: Any,
        sender: Any,
        packet: bytes,
        name: str,
        answer: Answer,
        rdata: bytes,
        flush: bool,
    ) -> None:
        """Store or refresh the record carried by one answer of ``packet``."""
        now = self._clock()
        rdata = bytes(rdata)
        rtype = answer.rtype
        port = 0
        stored = b""
        txt: Optional[list[str]] = None
        target: Optional[str] = None
        srv: Optional[SrvData] = None

        if rtype == RRType.PTR:
            if len(rdata) < 2:
                return
            try:
                target, _ = expand_name(packet, answer.rdata_offset)
            except DnsFormatError:
                return
            host_len = 0
            if (
                name != C_DNS_SD
                and len(name) + 1 < len(target)
                and target.endswith(name)
            ):
                host_len = len(target) - len(name) - 1
            if name.startswith("_"):
                self._service(iface, target, host_len, answer.ttl)
            stored = target.encode("utf-8")
        elif rtype == RRType.SRV:
            if len(rdata) < 8:
                return
            srv = SrvData.unpack(rdata)
            port = srv.port
            try:
                target, _ = expand_name(packet, answer.rdata_offset + SrvData.SIZE)
            except DnsFormatError:
                return
            stored = srv.pack() + target.encode("utf-8")
        elif rtype == RRType.TXT:
            if len(rdata) <= 2:
                return
            txt = _parse_txt(rdata)
        elif rtype == RRType.A:
            if len(rdata) != 4:
                return
            stored = rdata
        elif rtype == RRType.AAAA:
            if len(rdata) != 16:
                return
            stored = rdata
        else:
            return

        existing = self._find(name, rtype, port, stored)
        if existing is not None:
            if not answer.ttl:
                existing.time = now + 1 - existing.ttl
                existing.refresh = 100
            else:
                existing.ttl = answer.ttl
                existing.time = now
                existing.refresh = 50
            return

        if not answer.ttl:
            return

        record = CacheRecord(
            name=name,
            rtype=rtype,
            ttl=answer.ttl,
            time=now,
            iface=iface,
            sender=sender,
            port=port,
            rdata=stored,
            txt=txt,
            target=target,
            srv=srv,
        )
        self._records.setdefault(name.lower(), []).append(record)

    def host_is_known(self, name: str) -> bool:
        """True when an A or AAAA record for ``name`` is cached."""
        return any(r.rtype in (RRType.A, RRType.AAAA) for r in self.records_for(name))

    def dump_records(self, name: str, array: bool = False) -> dict[str, Any]:
        """Describe the addresses, text and service data cached for ``name``.

        With ``array`` repeated values are collected in lists; otherwise the
        last value of each key is kept.
        """
        run = self._run(name)
        result: dict[str, Any] = {}

        for key, rtype in (("ipv4", RRType.A), ("ipv6", RRType.AAAA)):
            for record in run:
                if record.rtype != rtype:
                    continue
                address = record.address
                if array:
                    values = result.setdefault(key, [])
                    if address is not None:
                        values.append(address)
                elif address is not None:
                    result[key] = address

        for record in run:
            if record.rtype == RRType.TXT:
                if record.txt:
                    result["txt"] = list(record.txt) if array else record.txt[-1]
            elif record.rtype == RRType.SRV:
                self._dump_srv(record, result)
        return result

    def _dump_srv(self, record: CacheRecord, result: dict[str, Any]) -> None:
        if record.target is not None:
            result["host"] = record.target
        index = record.name.find("._udp.")
        if index < 0:
            index = record.name.find("._tcp.")
        if index < 0:
            return
        result["domain"] = record.name[index + len("._udp."):]
        if record.port:
            result["port"] = record.port
        if record.ttl:
            result["ttl"] = record.ttl
        if record.time:
            last_update = time.time() - (self._clock() - record.time)
            result["last_update"] = time.strftime(
                "%Y-%m-%dT%H:%M:%SZ", time.localtime(last_update)
            )
        if record.srv is not None:
            result["priority"] = record.srv.priority
            result["weight"] = record.srv.weight

    def dump_recursive(
        self, name: str, rtype: int = RRType.ANY, iface: Any = None
    ) -> list[dict[str, Any]]:
        """Live records for ``name`` followed by what they point to."""
        return list(self._walk(name, rtype, iface, self._clock()))

    def _walk(self, name: str, rtype: int, iface: Any, now: int) -> Iterator[dict[str, Any]]:
        for record in self.records_for(name):
            ttl = record.ttl - (now - record.time)
            if ttl <= 0:
                continue
            if iface is not None and getattr(iface, "ifindex", None) != getattr(
                record.iface, "ifindex", None
            ):
                continue
            if rtype != RRType.ANY and rtype != record.rtype:
                continue

            entry: dict[str, Any] = {
                "name": record.name,
                "type": type_string(record.rtype),
                "ttl": ttl,
            }
            if record.rtype == RRType.TXT:
                if record.txt:
                    entry["data"] = list(record.txt)
            elif record.rtype == RRType.SRV:
                if record.srv is not None:
                    entry["priority"] = record.srv.priority
                    entry["weight"] = record.srv.weight
                    entry["port"] = record.srv.port
                    entry["target"] = record.target
            elif record.rtype == RRType.PTR:
                if record.target is not None:
                    entry["target"] = record.target
            else:
                address = record.address
                if address is not None:
                    entry["target"] = address
            yield entry

            if record.rtype == RRType.PTR and record.target is not None:
                yield from self._walk(record.target, RRType.SRV, iface, now)
                yield from self._walk(record.target, RRType.TXT, iface, now)
            if record.rtype == RRType.SRV and record.target is not None:
                yield from self._walk(record.target, RRType.A, iface, now)
                yield from self._walk(record.target, RRType.AAAA, iface, now)