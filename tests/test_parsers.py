import io

import pytest

from logtally.parsers import CSVParser
from logtally.utils import EndOfStream, ParseError


def parser_for(data: bytes, comma: str = ",") -> CSVParser:
    parser = CSVParser(comma)
    parser.reset(io.BufferedReader(io.BytesIO(data)))
    return parser


def read_all(parser):
    out = []
    while True:
        try:
            out.append(parser.next_record())
        except EndOfStream:
            return out
        except ParseError as e:
            out.append(("error", e.nbytes))


def test_records_and_byte_counts():
    parser = parser_for(b"a, b,c\nd,e\n")
    assert parser.next_record() == (7, ["a", "b", "c"])
    assert parser.next_record() == (4, ["d", "e"])
    with pytest.raises(EndOfStream):
        parser.next_record()


def test_custom_separator():
    assert read_all(parser_for(b"a|b|c\n", comma="|")) == [(6, ["a", "b", "c"])]


def test_crlf_and_missing_final_newline():
    assert read_all(parser_for(b"a,b\r\nc,d")) == [(5, ["a", "b"]), (3, ["c", "d"])]


def test_blank_lines_are_skipped():
    assert read_all(parser_for(b"a\n\nb\n")) == [(2, ["a"]), (3, ["b"])]


def test_quoted_field_spanning_lines():
    assert read_all(parser_for(b'"x\ny",z\n')) == [(8, ["x\ny", "z"])]


def test_malformed_quote_is_one_bad_record():
    records = read_all(parser_for(b'a,1\nb,"2"x\nc,3\n'))
    assert records == [(4, ["a", "1"]), ("error", 7), (4, ["c", "3"])]


def test_undecodable_line_is_one_bad_record():
    records = read_all(parser_for(b"a\n\xff\xfe\nb\n"))
    assert records == [(2, ["a"]), ("error", 3), (2, ["b"])]


def test_reset_discards_previous_stream():
    parser = parser_for(b"a\nb\n")
    parser.next_record()
    parser.reset(io.BytesIO(b"z\n"))
    assert read_all(parser) == [(2, ["z"])]


def test_clone_has_same_config_and_no_stream():
    parser = parser_for(b"a;b\n", comma=";")
    clone = parser.clone()
    assert clone is not parser
    assert clone.comma == ";"
    with pytest.raises(EndOfStream):
        clone.next_record()
    assert parser.next_record() == (4, ["a", "b"])


def test_separator_must_be_one_character():
    with pytest.raises(ValueError):
        CSVParser(",,")


def test_long_field_is_one_record():
    payload = b"x" * 200000
    records = read_all(parser_for(b"a," + payload + b"\nb,1\n"))
    assert records == [(200003, ["a", payload.decode()]), (4, ["b", "1"])]
