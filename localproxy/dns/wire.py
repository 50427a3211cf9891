"""DNS message encoding and decoding.

Only the subset needed by the local responder is implemented: the fixed
header, the question section (with compression pointer support on the read
side) and single A/AAAA answer records.
"""

import ipaddress
import struct
from dataclasses import dataclass
from typing import List, Tuple

from ..errors import DNSFormatError

HEADER_LEN = 12
HEADER_FORMAT = '!HHHHHH'

TYPE_A = 1
TYPE_AAAA = 28
CLASS_IN = 1

FLAG_QR = 0x8000
FLAG_AA = 0x0400
FLAG_RD = 0x0100
FLAG_RA = 0x0080

RCODE_NOERROR = 0
RCODE_NXDOMAIN = 3

POINTER_MASK = 0xC0
MAX_LABEL_LEN = 63
MAX_NAME_LEN = 255

LOOPBACK_V4 = ipaddress.IPv4Address('127.0.0.1').packed
LOOPBACK_V6 = ipaddress.IPv6Address('::1').packed


@dataclass(frozen=True)
class DnsHeader:
    id: int
    flags: int
    qdcount: int
    ancount: int
    nscount: int
    arcount: int

    @property
    def is_response(self) -> bool:
        return bool(self.flags & FLAG_QR)

    @property
    def recursion_desired(self) -> bool:
        return bool(self.flags & FLAG_RD)

    @property
    def rcode(self) -> int:
        return self.flags & 0x000F

    def pack(self) -> bytes:
        return struct.pack(
            HEADER_FORMAT, self.id, self.flags,
            self.qdcount, self.ancount, self.nscount, self.arcount
        )


@dataclass(frozen=True)
class DnsQuestion:
    name: str
    qtype: int
    qclass: int


def parse_header(data: bytes) -> DnsHeader:
    if len(data) < HEADER_LEN:
        raise DNSFormatError(f"Datagram too short for a DNS header: {len(data)} bytes")
    return DnsHeader(*struct.unpack_from(HEADER_FORMAT, data, 0))


def parse_name(data: bytes, offset: int) -> Tuple[str, int]:
    """Decode a possibly-compressed domain name.

    Args:
        data: The whole DNS message
        offset: Where the name starts

    Returns:
        Tuple of (dotted name without trailing dot, offset just past the name
        in the original position)

    Raises:
        DNSFormatError: On truncation, out-of-range pointers or pointer loops
    """
    labels: List[str] = []
    end_offset = None
    visited = set()
    total = 0

    while True:
        if offset >= len(data):
            raise DNSFormatError(f"Name runs past end of message at offset {offset}")

        length = data[offset]

        if length & POINTER_MASK == POINTER_MASK:
            if offset + 1 >= len(data):
                raise DNSFormatError("Truncated compression pointer")
            target = ((length & 0x3F) << 8) | data[offset + 1]
            if target in visited:
                raise DNSFormatError(f"Compression pointer loop at offset {target}")
            if target >= len(data):
                raise DNSFormatError(f"Compression pointer out of range: {target}")
            visited.add(target)
            if end_offset is None:
                end_offset = offset + 2
            offset = target
            continue

        if length & POINTER_MASK:
            raise DNSFormatError(f"Unsupported label type 0x{length:02x}")

        offset += 1
        if length == 0:
            break

        if offset + length > len(data):
            raise DNSFormatError("Label runs past end of message")
        total += length + 1
        if total > MAX_NAME_LEN:
            raise DNSFormatError("Name exceeds 255 bytes")
        try:
            labels.append(data[offset:offset + length].decode('ascii'))
        except UnicodeDecodeError:
            raise DNSFormatError(f"Non-ASCII label at offset {offset}") from None
        offset += length

    return '.'.join(labels), end_offset if end_offset is not None else offset


def parse_question(data: bytes, offset: int = HEADER_LEN) -> Tuple[DnsQuestion, int]:
    name, offset = parse_name(data, offset)
    if offset + 4 > len(data):
        raise DNSFormatError("Question section truncated")
    qtype, qclass = struct.unpack_from('!HH', data, offset)
    return DnsQuestion(name, qtype, qclass), offset + 4


def encode_name(name: str) -> bytes:
    """Encode a dotted name as uncompressed length-prefixed labels."""
    encoded = bytearray()
    for label in name.rstrip('.').split('.'):
        if not label:
            continue
        try:
            raw = label.encode('ascii')
        except UnicodeEncodeError:
            raise DNSFormatError(f"Non-ASCII label: {label!r}") from None
        if len(raw) > MAX_LABEL_LEN:
            raise DNSFormatError(f"Label too long: {label!r}")
        encoded.append(len(raw))
        encoded.extend(raw)
    encoded.append(0)
    return bytes(encoded)


def encode_question(question: DnsQuestion) -> bytes:
    return encode_name(question.name) + struct.pack('!HH', question.qtype, question.qclass)


def response_flags(query: DnsHeader, rcode: int) -> int:
    """QR|AA|RA, the query's RD bit echoed, and ``rcode``."""
    return FLAG_QR | FLAG_AA | FLAG_RA | (query.flags & FLAG_RD) | (rcode & 0x000F)


def loopback_rdata(qtype: int) -> bytes:
    return LOOPBACK_V6 if qtype == TYPE_AAAA else LOOPBACK_V4


def build_answer_response(query: DnsHeader, question: DnsQuestion, ttl: int = 300) -> bytes:
    """A NOERROR response carrying one loopback record for ``question``."""
    header = DnsHeader(query.id, response_flags(query, RCODE_NOERROR), 1, 1, 0, 0)
    rdata = loopback_rdata(question.qtype)
    answer = (
        encode_name(question.name)
        + struct.pack('!HHIH', question.qtype, CLASS_IN, ttl, len(rdata))
        + rdata
    )
    return header.pack() + encode_question(question) + answer


def build_nxdomain_response(query: DnsHeader, question: DnsQuestion) -> bytes:
    header = DnsHeader(query.id, response_flags(query, RCODE_NXDOMAIN), 1, 0, 0, 0)
    return header.pack() + encode_question(question)


def build_query(name: str, qtype: int = TYPE_A, query_id: int = 0, recursion_desired: bool = True) -> bytes:
    """Encode a single-question query, as a stub resolver would send it."""
    flags = FLAG_RD if recursion_desired else 0
    header = DnsHeader(query_id, flags, 1, 0, 0, 0)
    return header.pack() + encode_question(DnsQuestion(name, qtype, CLASS_IN))


def parse_answers(data: bytes) -> List[Tuple[str, int, int, bytes]]:
    """Decode the answer section into (name, type, ttl, rdata) tuples."""
    header = parse_header(data)
    offset = HEADER_LEN
    for _ in range(header.qdcount):
        _, offset = parse_question(data, offset)

    answers = []
    for _ in range(header.ancount):
        name, offset = parse_name(data, offset)
        if offset + 10 > len(data):
            raise DNSFormatError("Answer record truncated")
        rtype, _, ttl, rdlength = struct.unpack_from('!HHIH', data, offset)
        offset += 10
        rdata = data[offset:offset + rdlength]
        if len(rdata) != rdlength:
            raise DNSFormatError("Answer RDATA truncated")
        offset += rdlength
        answers.append((name, rtype, ttl, rdata))
    return answers
