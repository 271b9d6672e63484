import json

import pytest

from umdns.dns import C_DNS_SD, PacketReader, RRType, SrvData, expand_name
from umdns.service import LOOKUP_TIMEOUT, ServiceRegistry, encode_txt
from umdns.util import HostIdentity

IDENTITY = HostIdentity(label="myhost", local="myhost.local")


class FakeIface:
    def __init__(self, name):
        self.name = name


class Harness:
    """Collects what a registry sends and supplies the hooks it needs."""

    def __init__(self, tmp_path, ifaces=()):
        self.sent = []
        self.a_replies = []
        self.now = [1000]
        self.ifaces = list(ifaces)
        self.options = dict(
            send=lambda iface, to, packet: self.sent.append((iface, to, packet)),
            interfaces=lambda: self.ifaces,
            reply_a=lambda iface, to, ttl, host: self.a_replies.append((iface, ttl, host)),
            hostname_source=lambda: IDENTITY,
            clock=lambda: self.now[0],
            files_pattern=str(tmp_path / "*"),
        )


def decode(packet):
    reader = PacketReader(packet)
    header = reader.read_header()
    answers = [reader.read_answer() for _ in range(header.answers)]
    return header, answers, reader.data


@pytest.fixture
def harness(tmp_path):
    return Harness(tmp_path)


def web_blob(**extra):
    blob = {"service": "_http._tcp.local", "port": 80}
    blob.update(extra)
    return blob


def test_encode_txt_length_prefixes():
    assert encode_txt(["a=1", "bb"]) == b"\x03a=1\x02bb"


def test_encode_txt_rejects_empty_entry():
    with pytest.raises(ValueError):
        encode_txt(["ok", ""])


def test_encode_txt_truncates_long_entry_and_keeps_size():
    entry = "x" * 300
    data = encode_txt([entry])
    assert data[0] == 0xFF
    assert len(data) == 1 + len(entry)
    assert data[1:256] == b"x" * 255
    assert set(data[256:]) == {0}


def test_load_blob_uses_identity_defaults(harness):
    registry = ServiceRegistry(**harness.options)
    registry.load_blob("web", web_blob())
    (service,) = registry.services
    assert service.id == "web"
    assert service.instance == IDENTITY.label
    assert service.hostname == IDENTITY.local
    assert service.port == 80
    assert service.instance_name == f"{IDENTITY.label}._http._tcp.local"


def test_load_blob_without_port_keeps_hostname_only(harness):
    registry = ServiceRegistry(**harness.options)
    registry.load_blob("web", {"service": "_http._tcp.local", "hostname": "other.local"})
    assert registry.services == []
    assert registry.hostnames == ["other.local"]


def test_load_blob_with_wrong_port_type_is_ignored(harness):
    registry = ServiceRegistry(**harness.options)
    registry.load_blob("web", web_blob(port="80"))
    assert registry.services == []


def test_load_blob_with_empty_txt_entry_drops_service(harness):
    registry = ServiceRegistry(**harness.options)
    registry.load_blob("web", web_blob(txt=["a=1", ""], hostname="box.local"))
    assert registry.services == []
    assert registry.hostnames == ["box.local"]


def test_reply_sends_ptr_srv_and_txt(harness):
    registry = ServiceRegistry(**harness.options)
    registry.load_blob("web", web_blob(txt=["path=/"]))
    iface = FakeIface("lan")
    registry.reply(iface, None, None, None, 120, False)

    assert len(harness.sent) == 1
    sent_iface, to, packet = harness.sent[0]
    assert sent_iface is iface and to is None
    header, answers, data = decode(packet)
    assert header.is_response
    instance_name = f"{IDENTITY.label}._http._tcp.local"

    ptr, srv, txt = answers
    assert (ptr.rtype, ptr.name, ptr.ttl) == (RRType.PTR, "_http._tcp.local", 120)
    assert expand_name(data, ptr.rdata_offset)[0] == instance_name

    assert (srv.rtype, srv.name) == (RRType.SRV, instance_name)
    assert SrvData.unpack(srv.rdata).port == 80
    assert expand_name(data, srv.rdata_offset + SrvData.SIZE)[0] == IDENTITY.local

    assert (txt.rtype, txt.name) == (RRType.TXT, instance_name)
    assert txt.rdata == encode_txt(["path=/"])


def test_reply_is_rate_limited_unless_forced(harness):
    registry = ServiceRegistry(**harness.options)
    registry.load_blob("web", web_blob())
    iface = FakeIface("lan")

    registry.reply(iface, None, None, None, 120, False)
    registry.reply(iface, None, None, None, 120, False)
    assert len(harness.sent) == 1

    registry.reply(iface, None, None, None, 120, True)
    assert len(harness.sent) == 2

    harness.now[0] += LOOKUP_TIMEOUT + 1
    registry.reply(iface, None, None, None, 120, False)
    assert len(harness.sent) == 3


def test_reply_filters_by_instance_and_service(harness):
    registry = ServiceRegistry(**harness.options)
    registry.load_blob("web", web_blob(instance="printer"))
    registry.load_blob("ssh", {"service": "_ssh._tcp.local", "port": 22})
    iface = FakeIface("lan")

    registry.reply(iface, None, None, "_ssh._tcp.local", 120, True)
    registry.reply(iface, None, "printer", None, 120, True)
    registry.reply(iface, None, "nobody", None, 120, True)

    names = [decode(packet)[1][0].name for _, _, packet in harness.sent]
    assert names == ["_ssh._tcp.local", "_http._tcp.local"]


def test_announce_services(harness):
    registry = ServiceRegistry(**harness.options)
    registry.load_blob("web", web_blob())
    registry.load_blob("ssh", {"service": "_ssh._tcp.local", "port": 22})
    iface = FakeIface("lan")
    for service in registry.services:
        service.t = 5

    registry.announce_services(iface, None, 0)
    assert harness.sent == []
    assert all(service.t == 0 for service in registry.services)

    registry.announce_services(iface, None, 120)
    assert len(harness.sent) == 1
    _, answers, data = decode(harness.sent[0][2])
    assert [a.name for a in answers] == [C_DNS_SD, C_DNS_SD]
    targets = [expand_name(data, a.rdata_offset)[0] for a in answers]
    assert targets == ["_ssh._tcp.local", "_http._tcp.local"]


def service_list(blobs, running=True):
    return {"svc": {"instances": {"inst": {"running": running, "data": {"mdns": blobs}}}}}


def test_reload_announces_new_and_withdraws_removed(tmp_path):
    harness = Harness(tmp_path, [FakeIface("a"), FakeIface("b")])
    registry = ServiceRegistry(**harness.options)

    registry.reload(service_list({"web": web_blob()}), announce=True)
    assert len(harness.sent) == 2
    assert [s.id for s in registry.services] == ["web"]
    _, answers, _ = decode(harness.sent[0][2])
    assert all(a.ttl == registry.announce_ttl for a in answers)

    registry.reload({}, announce=True)
    assert registry.services == []
    assert len(harness.sent) == 4
    _, answers, _ = decode(harness.sent[3][2])
    assert answers and all(a.ttl == 0 for a in answers)


def test_reload_without_announce_sends_nothing(tmp_path):
    harness = Harness(tmp_path, [FakeIface("a")])
    registry = ServiceRegistry(**harness.options)
    registry.reload(service_list({"web": web_blob()}), announce=False)
    assert [s.id for s in registry.services] == ["web"]
    assert harness.sent == []


def test_reload_replaces_existing_service_silently(tmp_path):
    harness = Harness(tmp_path, [FakeIface("a")])
    registry = ServiceRegistry(**harness.options)
    registry.reload(service_list({"web": web_blob()}), announce=True)
    sent_before = len(harness.sent)

    registry.reload(service_list({"web": web_blob(port=81)}), announce=True)
    assert len(harness.sent) == sent_before
    assert registry.services[0].port == 81


def test_hostnames_announced_and_withdrawn(tmp_path):
    iface = FakeIface("a")
    harness = Harness(tmp_path, [iface])
    registry = ServiceRegistry(**harness.options)
    blobs = {"one": web_blob(hostname="box.local"), "two": {"hostname": "box.local"}}

    registry.reload(service_list(blobs))
    assert harness.a_replies == [(iface, registry.announce_ttl, "box.local")]

    registry.reload({})
    assert registry.hostnames == []
    assert harness.a_replies[-1] == (iface, 0, "box.local")
    assert len(harness.a_replies) == 2


def test_service_list_skips_instances_not_running(harness):
    registry = ServiceRegistry(**harness.options)
    registry.load_service_list(service_list({"web": web_blob()}, running=False))
    assert registry.services == []
    registry.load_service_list(service_list({"web": web_blob()}, running=True))
    assert [s.id for s in registry.services] == ["web"]


def test_load_files_reads_json_objects(tmp_path, harness):
    (tmp_path / "good.json").write_text(json.dumps({"web": web_blob()}))
    (tmp_path / "broken.json").write_text("{not json")
    (tmp_path / "list.json").write_text(json.dumps([web_blob()]))
    (tmp_path / "subdir").mkdir()

    registry = ServiceRegistry(**harness.options)
    registry.load_files(str(tmp_path / "*"))
    assert [s.id for s in registry.services] == ["web"]


def test_reload_reads_files_pattern(tmp_path, harness):
    (tmp_path / "svc.json").write_text(json.dumps({"ssh": {"service": "_ssh._tcp.local", "port": 22}}))
    registry = ServiceRegistry(**harness.options)
    registry.reload(None)
    assert [(s.id, s.port) for s in registry.services] == [("ssh", 22)]


def test_cleanup_forgets_services(harness):
    registry = ServiceRegistry(**harness.options)
    registry.load_blob("web", web_blob())
    registry.cleanup()
    assert registry.services == []
    registry.announce_services(FakeIface("a"), None, 120)
    assert harness.sent == []