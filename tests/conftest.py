"""
Brief: Shared pytest fixtures and helpers for dnsguard tests.

Inputs:
  - None

Outputs:
  - Fixtures: recorder, fake_upstream, make_pipeline
"""

import os
import struct
import sys
import threading
import time

import pytest

# Ensure 'src' is on sys.path so 'dnsguard' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from dnslib import QTYPE, RCODE, RR, A, CNAME, DNSRecord  # noqa: E402

from dnsguard.events import Broadcaster  # noqa: E402


class RecordingBroadcaster(Broadcaster):
    """Synchronous broadcaster that keeps every (topic, payload) pair."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events = []

    def publish(self, topic, payload):
        with self._lock:
            self.events.append((topic, payload))

    def topics(self):
        with self._lock:
            return [t for t, _ in self.events]

    def payloads(self, topic):
        with self._lock:
            return [p for t, p in self.events if t == topic]


class FakeUpstream:
    """
    Transport stand-in answering A questions from a table.

    Inputs (constructor):
      - answers: mapping domain -> IPv4 string; missing names get NXDOMAIN
      - cname: optional mapping domain -> alias placed before the A record
    """

    def __init__(self, answers=None, cname=None, error=None):
        self.answers = dict(answers or {})
        self.cname = dict(cname or {})
        self.error = error
        self.calls = []

    def __call__(self, host, port, wire, timeout_ms=2000):
        self.calls.append((host, port, timeout_ms))
        if self.error is not None:
            raise self.error
        req = DNSRecord.parse(wire)
        name = str(req.q.qname).rstrip(".")
        reply = req.reply()
        if name not in self.answers:
            reply.header.rcode = RCODE.NXDOMAIN
            return reply.pack()
        target = req.q.qname
        if name in self.cname:
            reply.add_answer(RR(req.q.qname, QTYPE.CNAME, rdata=CNAME(self.cname[name]), ttl=60))
            target = self.cname[name]
        reply.add_answer(RR(target, QTYPE.A, rdata=A(self.answers[name]), ttl=60))
        return reply.pack()


def query_bytes(name, qtype="A", qid=None):
    """Build a wire-format query, optionally with a fixed transaction id."""
    rec = DNSRecord.question(name, qtype)
    if qid is not None:
        rec.header.id = qid
    return rec.pack()


def raw_query(labels, qid=7, qtype=1):
    """Hand-build a one-question query so oversize names bypass dnslib's encoder."""
    qname = b"".join(bytes([len(label)]) + label.encode("ascii") for label in labels) + b"\x00"
    return struct.pack("!HHHHHH", qid, 0x0100, 1, 0, 0, 0) + qname + struct.pack("!HH", qtype, 1)


def wait_for(predicate, timeout=2.0, interval=0.01):
    """Poll predicate until it is truthy or timeout elapses; returns its last value."""
    deadline = time.monotonic() + timeout
    result = predicate()
    while not result and time.monotonic() < deadline:
        time.sleep(interval)
        result = predicate()
    return result


def answer_address(wire):
    """Return the first answer's rdata as a string, or None."""
    rec = DNSRecord.parse(wire)
    return str(rec.rr[0].rdata) if rec.rr else None


@pytest.fixture
def recorder():
    return RecordingBroadcaster()


@pytest.fixture
def fake_upstream():
    return FakeUpstream({"example.com": "93.184.216.34", "news.site": "203.0.113.7"})


@pytest.fixture
def make_pipeline(recorder, fake_upstream):
    """Factory building a QueryPipeline wired to the recorder and fake upstream."""
    from dnsguard.pipeline import QueryPipeline
    from dnsguard.resolver import UpstreamResolver

    built = []

    def _make(**kwargs):
        kwargs.setdefault("resolver", UpstreamResolver("192.0.2.53", transport=fake_upstream))
        kwargs.setdefault("broadcaster", recorder)
        p = QueryPipeline(**kwargs)
        built.append(p)
        return p

    yield _make
    for p in built:
        p.stop()
