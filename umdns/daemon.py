"""The responder process: wiring, event loop and orderly shutdown."""

from __future__ import annotations

import asyncio
import signal
import socket
from collections.abc import Callable
from typing import Any, Optional

from .announce import Announcer
from .cache import GC_INTERVAL, Cache
from .control import Control, ServiceListFn
from .dns import C_DNS_SD, RRType
from .interface import Interface, InterfaceManager, SocketType, collect_addresses, open_socket
from .responder import Responder, interface_addresses
from .service import DEFAULT_ANNOUNCE_TTL, SERVICE_FILES_PATTERN, ServiceRegistry
from .util import HostIdentity, get_hostname, monotonic_time


class _Call:
    """A delayed callback that may be created before the event loop runs."""

    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.handle: Optional[asyncio.TimerHandle] = None

    def cancel(self) -> None:
        self.cancelled = True
        if self.handle is not None:
            self.handle.cancel()

    def fire(self) -> None:
        self.handle = None
        if not self.cancelled:
            self.callback()


class Daemon:
    """Ties interfaces, cache, services and announcements into one running responder."""

    def __init__(
        self,
        announce_ttl: int = DEFAULT_ANNOUNCE_TTL,
        proto: int = 0,
        no_subnet: bool = False,
        debug: int = 0,
        *,
        hostname_source: Callable[[], HostIdentity] = get_hostname,
        address_source: Callable[[str, int], Any] = collect_addresses,
        index_source: Callable[[str], int] = socket.if_nametoindex,
        socket_factory: Callable[[SocketType], Any] = open_socket,
        host_addresses: Callable[[str], Any] = interface_addresses,
        service_list: Optional[ServiceListFn] = None,
        files_pattern: str = SERVICE_FILES_PATTERN,
        clock: Callable[[], int] = monotonic_time,
    ) -> None:
        self.debug = debug
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._stop_requested = False
        self._deferred: list[_Call] = []
        self._readers: set[int] = set()
        self._announcers: dict[str, Announcer] = {}

        self.cache = Cache(query=self._query, send_question=self._send_question, clock=clock)
        self.services = ServiceRegistry(
            interfaces=lambda: self.interfaces.interfaces,
            reply_a=self._reply_a,
            hostname_source=hostname_source,
            clock=clock,
            announce_ttl=announce_ttl,
            files_pattern=files_pattern,
        )
        self.interfaces = InterfaceManager(
            handler=self._handle_packet,
            on_start=self._start_interface,
            on_stop=self._stop_interface,
            cleanup=self.cache.cleanup,
            proto=proto,
            no_subnet=no_subnet,
            address_source=address_source,
            index_source=index_source,
            socket_factory=socket_factory,
        )
        self.responder = Responder(
            cache=self.cache,
            services=self.services,
            interfaces=self.interfaces,
            identity=self.services.identity,
            announce_ttl=announce_ttl,
            address_source=host_addresses,
            schedule_flush=self._schedule,
        )
        self.control = Control(
            self.responder, self.interfaces, self.services, self.cache, service_list
        )
        self._service_list = service_list

    # -- wiring --------------------------------------------------------------

    def _query(self, name: str, rtype: int) -> None:
        self.responder.query(name, rtype)

    def _send_question(self, iface: Any, to: Any, name: str, rtype: int, multicast: bool) -> None:
        self.responder.send_question(iface, to, name, rtype, multicast)

    def _reply_a(self, iface: Any, to: Any, ttl: int, hostname: str) -> None:
        self.responder.reply_a(iface, to, ttl, hostname)

    def _handle_packet(self, iface: Interface, sender: Any, port: int, data: bytes) -> None:
        self.responder.handle_packet(iface, sender, port, data)

    def _start_interface(self, iface: Interface) -> None:
        previous = self._announcers.pop(iface.id, None)
        if previous is not None:
            previous.stop()
        self.responder.send_question(iface, None, C_DNS_SD, RRType.PTR, False)
        announcer = Announcer(iface, self.responder, scheduler=self._schedule)
        self._announcers[iface.id] = announcer
        announcer.start()
        self._sync_readers()

    def _stop_interface(self, iface: Interface) -> None:
        announcer = self._announcers.pop(iface.id, None)
        if announcer is not None:
            announcer.stop()

    def _schedule(self, delay: float, callback: Callable[[], None]) -> _Call:
        call = _Call(delay, callback)
        if self._loop is not None:
            call.handle = self._loop.call_later(delay, call.fire)
        else:
            self._deferred.append(call)
        return call

    def _sync_readers(self) -> None:
        if self._loop is None:
            return
        for stype, sock in self.interfaces.sockets.items():
            fd = sock.fileno()
            if fd < 0 or fd in self._readers:
                continue
            self._loop.add_reader(fd, self.interfaces.receive, stype)
            self._readers.add(fd)

    def _gc_tick(self) -> None:
        self.cache.gc()
        self._sync_readers()
        self._schedule(GC_INTERVAL, self._gc_tick)

    def _farewell(self, iface: Interface) -> None:
        self.responder.reply_a(iface, None, 0, None)
        self.responder.reply_a_additional(iface, None, 0)
        self.services.announce_services(iface, None, 0)

    # -- lifecycle -----------------------------------------------------------

    def add_interface(self, name: str) -> bool:
        """Listen on interface ``name``; False when it has no usable address."""
        added = self.interfaces.add(name)
        self._sync_readers()
        return added

    async def _serve(self) -> None:
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._stop_event = asyncio.Event()
        signals: list[int] = []
        try:
            msg = self._service_list() if self._service_list is not None else None
            self.services.reload(msg, announce=False)
            self.responder.identity = self.services.identity

            deferred, self._deferred = self._deferred, []
            for call in deferred:
                if not call.cancelled:
                    call.handle = loop.call_later(call.delay, call.fire)
            self._schedule(GC_INTERVAL, self._gc_tick)
            self._sync_readers()

            for signum in (signal.SIGTERM, signal.SIGINT):
                try:
                    loop.add_signal_handler(signum, self.stop)
                    signals.append(signum)
                except (NotImplementedError, RuntimeError, ValueError):
                    pass

            if self._stop_requested:
                self._stop_event.set()
            await self._stop_event.wait()
        finally:
            for fd in self._readers:
                loop.remove_reader(fd)
            self._readers.clear()
            for signum in signals:
                loop.remove_signal_handler(signum)
            self._loop = None
            self._stop_event = None

    def run(self) -> None:
        """Serve until stopped, then shut down."""
        try:
            asyncio.run(self._serve())
        finally:
            self.shutdown()

    def stop(self) -> None:
        """Ask a running daemon to stop; before run it makes run return at once."""
        self._stop_requested = True
        if self._loop is not None and self._stop_event is not None:
            self._loop.call_soon_threadsafe(self._stop_event.set)

    def shutdown(self) -> None:
        """Withdraw this host, close sockets and forget all state."""
        for announcer in self._announcers.values():
            announcer.stop()
        self._announcers.clear()
        for call in self._deferred:
            call.cancel()
        self._deferred.clear()
        self.interfaces.shutdown(self._farewell)
        self.cache.cleanup(None)
        self.services.cleanup()
        self.interfaces.begin_update()
        self.interfaces.flush()