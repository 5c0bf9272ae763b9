"""
parsers.py

Record decoders. A Parser is bound to one byte stream at a time and is never
shared between workers: each worker gets its own instance via clone().

- Parser: the contract every decoder implements.
- CSVParser: delimited-text decoder built on the stdlib csv module.
"""

from abc import ABC, abstractmethod
from typing import Any, BinaryIO, Iterator, List, Optional, Tuple
import csv
import logging
import sys

from logtally.utils import EndOfStream, ParseError

logger = logging.getLogger("parsers")


def _lift_field_size_limit() -> None:
    """Let csv accept fields of any length; the default caps them at 128 KiB."""
    limit = sys.maxsize
    while True:
        try:
            csv.field_size_limit(limit)
            return
        except OverflowError:
            limit //= 2


# A decoded unit; its shape is parser-specific.
LogRecord = Any


class Parser(ABC):
    """
    Stateful record decoder over a byte stream.

    Implementations hold configuration plus transient decode state for the
    stream passed to reset(). clone() must return an instance with the same
    configuration and no shared decode state.
    """

    @abstractmethod
    def clone(self) -> "Parser":
        ...

    @abstractmethod
    def reset(self, stream: BinaryIO) -> None:
        """Bind to a new stream, discarding any prior position."""

    @abstractmethod
    def next_record(self) -> Tuple[int, LogRecord]:
        """
        Decode the next record.

        Returns:
            (bytes consumed, record)

        Raises:
            EndOfStream: the stream has no more records.
            ParseError: one malformed record; the next call moves past it.
        """


class _LineFeed(Iterator[str]):
    """
    Line iterator handed to csv.reader. Decodes each binary line and keeps a
    running byte count. A class rather than a generator so an exception raised
    for one line leaves the feed usable for the next.
    """

    def __init__(self, stream: BinaryIO, encoding: str) -> None:
        self._stream = stream
        self._encoding = encoding
        self.consumed = 0

    def __next__(self) -> str:
        raw = self._stream.readline()
        if not raw:
            raise StopIteration
        self.consumed += len(raw)
        return raw.decode(self._encoding)


class CSVParser(Parser):
    """
    Delimited-text decoder. Each record is a list of field strings.

    Leading spaces in fields are trimmed and quoting is strict, so a stray
    character after a closing quote is a ParseError for that row only.
    Blank lines are skipped; their bytes are charged to the next record.
    Fields have no length limit. A line that is not valid in `encoding` is a
    ParseError and is not counted, rather than passed through as raw bytes.
    """

    def __init__(self, comma: str = ",", encoding: str = "utf-8") -> None:
        if len(comma) != 1:
            raise ValueError("comma must be a single character, got %r" % comma)
        _lift_field_size_limit()
        self.comma = comma
        self.encoding = encoding
        self._feed: Optional[_LineFeed] = None
        self._reader = None
        self._mark = 0

    def clone(self) -> "CSVParser":
        return CSVParser(self.comma, self.encoding)

    def reset(self, stream: BinaryIO) -> None:
        self._feed = _LineFeed(stream, self.encoding)
        self._reader = csv.reader(
            self._feed,
            delimiter=self.comma,
            skipinitialspace=True,
            strict=True,
        )
        self._mark = 0

    def _consumed(self) -> int:
        nbytes = self._feed.consumed - self._mark
        self._mark = self._feed.consumed
        return nbytes

    def next_record(self) -> Tuple[int, List[str]]:
        if self._reader is None:
            raise EndOfStream()
        while True:
            try:
                row = next(self._reader)
            except StopIteration:
                raise EndOfStream()
            except UnicodeDecodeError as e:
                raise ParseError(self._consumed(), "undecodable line: %s" % e)
            except csv.Error as e:
                raise ParseError(self._consumed(), str(e))
            if row:
                return self._consumed(), row

    def __repr__(self) -> str:
        return "CSVParser(comma=%r)" % self.comma
