import ipaddress
import json
from types import SimpleNamespace

import pytest

from umdns.control import Control, ControlError
from umdns.dns import (
    C_DNS_SD,
    MCAST_ADDR,
    MCAST_PORT,
    PacketBuilder,
    PacketReader,
    RRType,
    SrvData,
    compress_name,
)
from umdns.interface import AddressEntry, InterfaceManager, SocketType
from umdns.responder import Responder
from umdns.service import ServiceRegistry
from umdns.util import HostIdentity


class FakeSocket:
    def __init__(self, sent):
        self.sent = sent
        self.closed = False

    def sendmsg(self, buffers, ancdata, flags, address):
        self.sent.append((bytes(buffers[0]), address))
        return len(buffers[0])

    def setsockopt(self, *args):
        pass

    def fileno(self):
        return -1

    def close(self):
        self.closed = True


def _entry():
    return AddressEntry(
        ipaddress.IPv4Address("192.168.1.100"), ipaddress.IPv4Address("255.255.255.0")
    )


@pytest.fixture
def stack(tmp_path):
    sent = []
    addresses = {"eth0": ([_entry()], []), "eth1": ([_entry()], [])}
    indexes = {"eth0": 3, "eth1": 4}
    manager = InterfaceManager(
        address_source=lambda name, proto: addresses.get(name, ([], [])),
        index_source=lambda name: indexes.get(name, 0),
        socket_factory=lambda stype: (FakeSocket(sent), False),
    )
    identity = HostIdentity("box", "box.local")
    services = ServiceRegistry(
        interfaces=lambda: manager.interfaces,
        hostname_source=lambda: identity,
        files_pattern=str(tmp_path / "*.json"),
    )
    responder = Responder(
        services=services,
        interfaces=manager,
        identity=identity,
        address_source=lambda name: ["192.168.1.100"],
    )
    manager.cleanup = responder.cache.cleanup
    manager.add("eth0")
    state = {"msg": None}
    control = Control(responder, manager, service_list=lambda: state["msg"])
    return SimpleNamespace(
        sent=sent, manager=manager, services=services, responder=responder,
        control=control, state=state, tmp_path=tmp_path,
    )


def _feed(stack):
    iface = stack.manager.get("eth0", SocketType.MC_IPV4)
    builder = PacketBuilder()
    builder.add_answer(
        "_http._tcp.local", RRType.PTR, compress_name("printer._http._tcp.local"), 120
    )
    builder.add_answer(
        "printer._http._tcp.local",
        RRType.SRV,
        SrvData(port=631).pack() + compress_name("printer.local"),
        120,
    )
    builder.add_answer("printer.local", RRType.A, bytes([192, 168, 1, 50]), 120)
    stack.responder.handle_packet(iface, ("192.168.1.50", MCAST_PORT), MCAST_PORT, builder.to_bytes())


def test_browse_groups_by_type_and_instance(stack):
    _feed(stack)
    result = stack.control.browse()
    printer = result["_http._tcp"]["printer"]
    assert printer["iface"] == "eth0"
    assert printer["host"] == "printer.local"
    assert printer["port"] == 631
    assert printer["ipv4"] == "192.168.1.50"


def test_browse_array_and_filter(stack):
    _feed(stack)
    assert stack.control.browse(array=True)["_http._tcp"]["printer"]["ipv4"] == ["192.168.1.50"]
    assert stack.control.browse(service="_ipp._tcp") == {}
    without = stack.control.browse(address=False)["_http._tcp"]["printer"]
    assert "ipv4" not in without


def test_hosts_lists_address_records(stack):
    _feed(stack)
    assert stack.control.hosts() == {"printer.local": {"ipv4": "192.168.1.50"}}
    assert stack.control.hosts(array=True) == {"printer.local": {"ipv4": ["192.168.1.50"], "ipv6": []}}


def test_fetch_follows_pointers(stack):
    _feed(stack)
    records = stack.control.fetch("_http._tcp.local", "eth0")["records"]
    assert [entry["type"] for entry in records] == ["PTR", "SRV", "A"]
    assert records[0]["target"] == "printer._http._tcp.local"
    only_a = stack.control.fetch("printer.local", "eth0", RRType.A)["records"]
    assert [entry["target"] for entry in only_a] == ["192.168.1.50"]


def test_fetch_requires_interface(stack):
    with pytest.raises(ControlError) as info:
        stack.control.fetch()
    assert info.value.status == ControlError.INVALID_ARGUMENT


def test_unknown_interface_is_not_found(stack):
    with pytest.raises(ControlError) as info:
        stack.control.query("box.local", "eth9")
    assert info.value.status == ControlError.NOT_FOUND
    with pytest.raises(ControlError) as info:
        stack.control.fetch("box.local", "eth9")
    assert info.value.status == ControlError.NOT_FOUND


@pytest.mark.parametrize("interface", [None, "eth0"])
def test_query_sends_multicast_question(stack, interface):
    stack.sent.clear()
    stack.control.query("box.local", interface, RRType.A)
    multicast = [packet for packet, address in stack.sent if address == (MCAST_ADDR, MCAST_PORT)]
    assert len(multicast) == 1
    reader = PacketReader(multicast[0])
    assert reader.read_header().questions == 1
    question = reader.read_question()
    assert question.name == "box.local"
    assert question.rtype == RRType.A
    assert question.unicast is False


def test_set_config_replaces_interfaces(stack):
    stack.control.set_config(["eth1"])
    assert stack.manager.get("eth0", SocketType.MC_IPV4) is None
    assert stack.manager.get("eth1", SocketType.MC_IPV4).ifindex == 4


def test_set_config_keep_adds(stack):
    stack.control.set_config(["eth1"], keep=True)
    assert stack.manager.get("eth0", SocketType.MC_IPV4).ifindex == 3
    assert stack.manager.get("eth1", SocketType.UC_IPV4).ifindex == 4


@pytest.mark.parametrize("bad", [None, "eth0", ["eth0", 3]])
def test_set_config_rejects_bad_list(stack, bad):
    with pytest.raises(ControlError) as info:
        stack.control.set_config(bad)
    assert info.value.status == ControlError.INVALID_ARGUMENT


def test_set_config_notifies(stack):
    seen = []
    control = Control(stack.responder, stack.manager, notify=seen.append)
    control.set_config(["eth0"])
    assert seen == ["set_config"]


def test_announcements(stack):
    stack.services.load_blob("web", {"service": "_http._tcp.local", "port": 80, "txt": ["a=1", "b=2"]})
    stack.services.load_blob("idle", {"service": "_ftp._tcp.local", "port": 0})
    assert stack.control.announcements() == {
        "_http._tcp.local": {"web": {"port": 80, "txt": ["a=1", "b=2"]}}
    }


def test_update_queues_discovery(stack):
    stack.control.update()
    pending = stack.responder.pending_queries
    assert (C_DNS_SD, int(RRType.ANY)) in pending
    assert (C_DNS_SD, int(RRType.PTR)) in pending


def test_reload_reads_files_and_service_list(stack):
    (stack.tmp_path / "ssh.json").write_text(
        json.dumps({"ssh": {"service": "_ssh._tcp.local", "port": 22}})
    )
    stack.state["msg"] = {
        "web": {"instances": {"main": {"running": True, "data": {"mdns": {
            "www": {"service": "_http._tcp.local", "port": 80}
        }}}}}
    }
    stack.control.reload()
    assert [service.id for service in stack.services.services] == ["ssh", "www"]
    assert stack.responder.identity == stack.services.identity