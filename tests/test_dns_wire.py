"""Tests for DNS message parsing and encoding."""

import struct

import pytest

from localproxy.dns.wire import (
    CLASS_IN,
    FLAG_AA,
    FLAG_QR,
    FLAG_RA,
    FLAG_RD,
    LOOPBACK_V4,
    LOOPBACK_V6,
    RCODE_NXDOMAIN,
    TYPE_A,
    TYPE_AAAA,
    DnsQuestion,
    build_answer_response,
    build_nxdomain_response,
    build_query,
    encode_name,
    parse_answers,
    parse_header,
    parse_name,
    parse_question,
)
from localproxy.errors import DNSFormatError


@pytest.mark.dns
class TestNames:
    """Domain name encoding and compression pointers."""

    def test_encode_name(self):
        assert encode_name('myapp.test') == b'\x05myapp\x04test\x00'
        assert encode_name('myapp.test.') == b'\x05myapp\x04test\x00'

    def test_parse_plain_name(self):
        data = b'\x00' * 12 + b'\x03api\x05myapp\x04test\x00'
        name, offset = parse_name(data, 12)
        assert name == 'api.myapp.test'
        assert offset == len(data)

    def test_parse_compressed_name(self):
        # "myapp.test" at offset 12, then "api" + pointer to 12
        data = b'\x00' * 12 + b'\x05myapp\x04test\x00' + b'\x03api\xc0\x0c'
        second = 12 + len(b'\x05myapp\x04test\x00')
        name, offset = parse_name(data, second)
        assert name == 'api.myapp.test'
        assert offset == len(data)

    def test_pointer_loop_is_rejected(self):
        data = b'\x00' * 12 + b'\xc0\x0c'
        with pytest.raises(DNSFormatError, match="loop"):
            parse_name(data, 12)

    def test_pointer_out_of_range_is_rejected(self):
        data = b'\x00' * 12 + b'\xc0\xff'
        with pytest.raises(DNSFormatError, match="out of range"):
            parse_name(data, 12)

    def test_truncated_label_is_rejected(self):
        data = b'\x00' * 12 + b'\x05my'
        with pytest.raises(DNSFormatError):
            parse_name(data, 12)

    def test_label_too_long(self):
        with pytest.raises(DNSFormatError):
            encode_name('a' * 64 + '.test')

    def test_non_ascii_label_is_rejected(self):
        data = b'\x00' * 12 + b'\x02\xff\xfe\x04test\x00'
        with pytest.raises(DNSFormatError, match="Non-ASCII"):
            parse_name(data, 12)

    def test_non_ascii_name_cannot_be_encoded(self):
        with pytest.raises(DNSFormatError, match="Non-ASCII"):
            encode_name('café.test')


@pytest.mark.dns
class TestMessages:
    """Header, question and response records."""

    def test_short_header(self):
        with pytest.raises(DNSFormatError):
            parse_header(b'\x00' * 5)

    def test_query_header_and_question(self):
        query = build_query('myapp.test', TYPE_AAAA, query_id=0x1234)
        header = parse_header(query)
        assert header.id == 0x1234
        assert header.qdcount == 1
        assert header.recursion_desired
        assert not header.is_response

        question, offset = parse_question(query)
        assert question == DnsQuestion('myapp.test', TYPE_AAAA, CLASS_IN)
        assert offset == len(query)

    def test_truncated_question(self):
        query = build_query('myapp.test')
        with pytest.raises(DNSFormatError):
            parse_question(query[:-2])

    def test_a_answer(self):
        query = build_query('myapp.test', TYPE_A, query_id=7)
        header = parse_header(query)
        question, _ = parse_question(query)

        response = build_answer_response(header, question, ttl=300)
        rheader = parse_header(response)
        assert rheader.id == 7
        assert rheader.flags == FLAG_QR | FLAG_AA | FLAG_RD | FLAG_RA
        assert (rheader.qdcount, rheader.ancount, rheader.nscount, rheader.arcount) == (1, 1, 0, 0)
        assert parse_answers(response) == [('myapp.test', TYPE_A, 300, LOOPBACK_V4)]

    def test_aaaa_answer(self):
        query = build_query('myapp.test', TYPE_AAAA)
        header = parse_header(query)
        question, _ = parse_question(query)
        answers = parse_answers(build_answer_response(header, question, ttl=60))
        assert answers == [('myapp.test', TYPE_AAAA, 60, LOOPBACK_V6)]

    def test_rd_bit_is_echoed(self):
        query = build_query('myapp.test', recursion_desired=False)
        header = parse_header(query)
        question, _ = parse_question(query)
        rheader = parse_header(build_answer_response(header, question))
        assert not rheader.recursion_desired

    def test_nxdomain(self):
        query = build_query('other.example', query_id=99)
        header = parse_header(query)
        question, _ = parse_question(query)

        response = build_nxdomain_response(header, question)
        rheader = parse_header(response)
        assert rheader.id == 99
        assert rheader.is_response
        assert rheader.rcode == RCODE_NXDOMAIN
        assert rheader.ancount == 0
        # Question section is echoed back
        assert response[12:] == query[12:]

    def test_truncated_answer_rdata(self):
        query = build_query('myapp.test')
        header = parse_header(query)
        question, _ = parse_question(query)
        response = build_answer_response(header, question)
        with pytest.raises(DNSFormatError):
            parse_answers(response[:-2])

    def test_answer_ttl_encoding(self):
        query = build_query('myapp.test')
        header = parse_header(query)
        question, _ = parse_question(query)
        response = build_answer_response(header, question, ttl=12345)
        # TTL sits after name, type and class of the answer record
        answer_start = len(query)
        name_len = len(encode_name('myapp.test'))
        ttl = struct.unpack_from('!I', response, answer_start + name_len + 4)[0]
        assert ttl == 12345
