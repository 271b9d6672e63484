import ipaddress

import pytest

from umdns.announce import (
    PROBE_INTERVAL,
    PROBE_WAIT_DELAY,
    START_DELAY,
    AnnounceState,
    Announcer,
)
from umdns.dns import CLASS_IN, Answer, PacketReader, RRType
from umdns.interface import Interface, SocketType
from umdns.responder import Responder
from umdns.util import HostIdentity

IDENTITY = HostIdentity(label="myhost", local="myhost.local")


class FakeHandle:
    def __init__(self):
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    def __init__(self):
        self.calls = []

    def __call__(self, delay, callback):
        handle = FakeHandle()
        self.calls.append((delay, callback, handle))
        return handle


def parse(packet):
    reader = PacketReader(packet)
    header = reader.read_header()
    questions = [reader.read_question() for _ in range(header.questions)]
    answers = [reader.read_answer() for _ in range(header.answers)]
    return questions, answers


@pytest.fixture
def setup():
    iface = Interface(name="fuzz0", stype=SocketType.MC_IPV4, ifindex=1)
    sent = []
    responder = Responder(
        identity=IDENTITY,
        send=lambda i, to, packet: sent.append(packet),
        address_source=lambda name: [ipaddress.IPv4Address("192.168.1.100")],
    )
    return iface, responder, sent


def test_probe_then_announce(setup):
    iface, responder, sent = setup
    announcer = Announcer(iface, responder)
    announcer.start()
    assert announcer.state == AnnounceState.PROBE1
    delays = [announcer.step() for _ in range(3)]
    assert delays == [PROBE_INTERVAL] * 3
    assert len(sent) == 3
    for packet in sent:
        questions, _ = parse(packet)
        assert [(q.name, q.rtype, q.rclass) for q in questions] == [
            ("myhost.local", RRType.ANY, CLASS_IN)
        ]
    assert announcer.step() == PROBE_WAIT_DELAY
    assert len(sent) == 3
    delay = announcer.step()
    assert announcer.state == AnnounceState.ANNOUNCE
    assert delay == pytest.approx(3600)
    _, answers = parse(sent[3])
    assert [(a.name, a.rtype, a.ttl) for a in answers] == [
        ("myhost.local", RRType.A, responder.announce_ttl)
    ]


def test_announce_repeats(setup):
    iface, responder, sent = setup
    announcer = Announcer(iface, responder, ttl=100)
    announcer.state = AnnounceState.ANNOUNCE
    first = announcer.step()
    second = announcer.step()
    assert first == second
    assert first > PROBE_WAIT_DELAY
    assert len(sent) == 2
    assert parse(sent[0])[1][0].ttl == 100


def test_known_host_stops_announcing(setup):
    iface, responder, sent = setup
    responder.cache.answer(
        iface, ("192.168.1.2", 5353), b"", "myhost.local",
        Answer("myhost.local", RRType.A, CLASS_IN, 120, b"\xc0\xa8\x01\x02"),
        b"\xc0\xa8\x01\x02", False,
    )
    announcer = Announcer(iface, responder)
    announcer.state = AnnounceState.PROBE_END
    assert announcer.step() is None
    assert announcer.state == AnnounceState.PROBE_END
    assert sent == []


def test_scheduler_drives_steps(setup):
    iface, responder, sent = setup
    scheduler = FakeScheduler()
    announcer = Announcer(iface, responder, scheduler=scheduler)
    announcer.start()
    assert scheduler.calls[0][0] == START_DELAY
    scheduler.calls[0][1]()
    assert scheduler.calls[1][0] == PROBE_INTERVAL
    assert len(sent) == 1
    announcer.stop()
    assert scheduler.calls[1][2].cancelled


def test_restart_resets_state(setup):
    iface, responder, _ = setup
    scheduler = FakeScheduler()
    announcer = Announcer(iface, responder, scheduler=scheduler)
    announcer.start()
    announcer.step()
    announcer.start()
    assert announcer.state == AnnounceState.PROBE1
    assert scheduler.calls[0][2].cancelled