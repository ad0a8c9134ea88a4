"""Wire-format helpers for decoding DNS queries and encoding synthesized answers.

Brief:
  Thin layer over dnslib. decode() turns raw datagram bytes into a Query and
  raises ParseError for anything that is not a well-formed question; encode()
  builds the single-answer A response the pipeline sends back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from dnslib import QTYPE, RR, A, DNSRecord

from .errors import ParseError
from .rules.evaluator import Verdict

logger = logging.getLogger(__name__)

ANSWER_TTL = 300
BLOCKED_ADDRESS = "0.0.0.0"
MAX_NAME_LENGTH = 253


def normalize_qname(qname: object) -> str:
    """Brief: Lower-case a question name and strip its trailing dot.

    Inputs:
      - qname: dnslib DNSLabel or plain string.

    Outputs:
      - str: Normalized domain, e.g. "Example.COM." -> "example.com".
    """

    return str(qname).rstrip(".").lower()


@dataclass(frozen=True)
class Query:
    """Decoded DNS question.

    Inputs (constructor):
      - id: 16-bit transaction id from the header.
      - name: Normalized question name.
      - qtype: Numeric RR type (QTYPE.A == 1).
      - record: Parsed dnslib request, kept so replies can mirror it.
    """

    id: int
    name: str
    qtype: int
    record: DNSRecord

    @property
    def is_a(self) -> bool:
        return self.qtype == QTYPE.A

    @property
    def qtype_name(self) -> str:
        return str(QTYPE.get(self.qtype, str(self.qtype)))


def decode(data: bytes) -> Query:
    """Brief: Parse an inbound datagram into a Query.

    Inputs:
      - data: Raw DNS wire bytes.

    Outputs:
      - Query for the first question in the packet.

    Raises:
      - ParseError: when the bytes are not a DNS message, the message is a
        response (QR=1), it carries no question, or the question
        name exceeds MAX_NAME_LENGTH characters.
    """

    try:
        record = DNSRecord.parse(data)
    except Exception as exc:
        raise ParseError(f"malformed DNS packet: {exc}") from exc

    if record.header.qr:
        raise ParseError("packet is a response, not a query")
    if not record.questions:
        raise ParseError("query has no question section")

    question = record.questions[0]
    name = normalize_qname(question.qname)
    if not name:
        raise ParseError("query for the root name is not supported")
    if len(name) > MAX_NAME_LENGTH:
        raise ParseError(f"question name longer than {MAX_NAME_LENGTH} characters")
    return Query(
        id=int(record.header.id),
        name=name,
        qtype=int(question.qtype),
        record=record,
    )


def encode(
    query: Query, verdict: Verdict, resolved_address: Optional[str] = None
) -> bytes:
    """Brief: Build the response wire for a decided query.

    Inputs:
      - query: Decoded Query being answered.
      - verdict: Decision for query.name.
      - resolved_address: Upstream IPv4 address for allowed queries; None when
        resolution failed.

    Outputs:
      - bytes: Response with the request's id and RD flag, RA set, and a single
        A answer (TTL 300). Blocked or unresolved queries answer 0.0.0.0.
        Non-A questions get an empty answer section.

    Example:
      >>> q = decode(DNSRecord.question("tracker.io").pack())
      >>> wire = encode(q, Verdict.block("tracker.io"))
      >>> str(DNSRecord.parse(wire).rr[0].rdata)
      '0.0.0.0'
    """

    reply = query.record.reply(ra=1, aa=0)
    if query.is_a:
        if verdict.blocked or not resolved_address:
            address = BLOCKED_ADDRESS
        else:
            address = resolved_address
        qname = query.record.questions[0].qname
        reply.add_answer(RR(qname, QTYPE.A, rdata=A(address), ttl=ANSWER_TTL))
    return reply.pack()
