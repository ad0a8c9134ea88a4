"""
Brief: Tests for dnsguard.codec decode/encode.

Inputs:
  - None

Outputs:
  - None
"""

import pytest
from dnslib import QTYPE, DNSRecord

from conftest import query_bytes, raw_query
from dnsguard import codec
from dnsguard.errors import ParseError
from dnsguard.rules.evaluator import Verdict


def test_decode_normalizes_name_and_keeps_id():
    q = codec.decode(query_bytes("WWW.Example.COM.", qid=4242))
    assert q.id == 4242
    assert q.name == "www.example.com"
    assert q.is_a
    assert q.qtype_name == "A"


def test_decode_non_a_query_is_not_a():
    q = codec.decode(query_bytes("example.com", "AAAA"))
    assert not q.is_a
    assert q.qtype == QTYPE.AAAA


@pytest.mark.parametrize("data", [b"", b"\x00\x01\x02", b"\xff" * 7])
def test_decode_rejects_garbage(data):
    with pytest.raises(ParseError):
        codec.decode(data)


def test_decode_rejects_responses():
    reply = DNSRecord.question("example.com").reply()
    with pytest.raises(ParseError):
        codec.decode(reply.pack())


def test_decode_rejects_missing_question():
    rec = DNSRecord()
    with pytest.raises(ParseError):
        codec.decode(rec.pack())


def test_encode_blocked_answers_zero_address():
    q = codec.decode(query_bytes("ads.example", qid=7))
    wire = codec.encode(q, Verdict.block("ads"), "1.2.3.4")
    rec = DNSRecord.parse(wire)
    assert rec.header.id == 7
    assert rec.header.qr == 1
    assert rec.header.ra == 1
    assert rec.header.rd == 1
    assert len(rec.rr) == 1
    assert str(rec.rr[0].rdata) == "0.0.0.0"
    assert rec.rr[0].ttl == codec.ANSWER_TTL == 300


def test_encode_allowed_uses_resolved_address():
    q = codec.decode(query_bytes("example.com"))
    wire = codec.encode(q, Verdict.allow(), "93.184.216.34")
    assert str(DNSRecord.parse(wire).rr[0].rdata) == "93.184.216.34"


def test_encode_allowed_without_address_answers_zero():
    q = codec.decode(query_bytes("example.com"))
    wire = codec.encode(q, Verdict.allow(), None)
    assert str(DNSRecord.parse(wire).rr[0].rdata) == "0.0.0.0"


def test_encode_non_a_has_empty_answer():
    q = codec.decode(query_bytes("example.com", "MX"))
    rec = DNSRecord.parse(codec.encode(q, Verdict.allow(), "1.2.3.4"))
    assert rec.rr == []


def test_decode_rejects_names_over_253_characters():
    data = raw_query(["a" * 63, "b" * 63, "c" * 63, "d" * 62])
    with pytest.raises(ParseError):
        codec.decode(data)


def test_decode_accepts_253_character_name():
    q = codec.decode(raw_query(["a" * 63, "b" * 63, "c" * 63, "d" * 61]))
    assert len(q.name) == codec.MAX_NAME_LENGTH
