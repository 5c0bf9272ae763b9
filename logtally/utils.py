"""
Utilities : shared types, config constants, error taxonomy and worker counters.
This module defines WorkerStats, the RunConfig dataclass and the helpers used to
turn raw option strings into key-field indices.
"""

from dataclasses import dataclass, asdict, field
from typing import Dict, Any, Optional, List, Tuple
import copy
import logging

logger = logging.getLogger("utils")

DEFAULT_CONFIG = {
    "pipeline": {
        "in": ".",  # input file or directory
        "out": ".",  # output directory
        "procs": 1,  # worker pool size
        "comma": ",",  # field separator for delimited parsing
        "keys": "0",  # key-field indices of the default report
        "reports": [],  # extra "name:idx,idx" report specs
        "buffer_size": 8 * 1024 * 1024,  # buffered reader size per file
        "output_format": "text",
        "backend": "threads",
    }
}

DEFAULT_REPORT_NAME = "quick"
OUTPUT_FORMATS = ("text", "json")
BACKENDS = ("threads", "ray")


class LogTallyError(Exception):
    """Base class for errors raised by logtally."""


class ConfigError(LogTallyError):
    """Invalid configuration; the run must abort before any worker starts."""


class EndOfStream(LogTallyError):
    """Raised by a parser when its stream has no more records. Not an error."""


class ParseError(LogTallyError):
    """
    One malformed record.

    Attributes:
        nbytes: bytes consumed while trying to decode the record.
    """

    def __init__(self, nbytes: int, message: str) -> None:
        super().__init__(message)
        self.nbytes = nbytes


@dataclass
class WorkerStats:
    """
    Per-worker counters. Owned by exactly one worker during processing and
    merged into a master copy only after that worker has terminated.

    Attributes:
        files: files fully processed.
        bytes: decoded (decompressed) bytes read.
        bytes_compressed: on-disk size of the processed files.
        records: records successfully decoded.
    """

    files: int = 0
    bytes: int = 0
    bytes_compressed: int = 0
    records: int = 0

    def merge(self, other: "WorkerStats") -> None:
        self.files += other.files
        self.bytes += other.bytes
        self.bytes_compressed += other.bytes_compressed
        self.records += other.records

    def to_dict(self) -> Dict[str, int]:
        """Return as JSON-serializable dict."""
        return asdict(self)

    def __str__(self) -> str:
        return "files=%d, bytes=%d, bytesCompressed=%d, records=%d" % (
            self.files,
            self.bytes,
            self.bytes_compressed,
            self.records,
        )


def parse_key_indices(raw: str) -> List[int]:
    """
    Parse a comma separated list of key-field indices.

    Non-numeric and negative entries are dropped silently, so "0,x,2,-1"
    gives [0, 2]. An empty result is left to the caller to reject.
    """
    indices = []
    for part in raw.split(","):
        part = part.strip()
        try:
            idx = int(part)
        except ValueError:
            logger.debug("Dropping key index %r", part)
            continue
        if idx < 0:
            logger.debug("Dropping negative key index %d", idx)
            continue
        indices.append(idx)
    return indices


def parse_report_spec(spec: str) -> Tuple[str, List[int]]:
    """
    Parse a "name:idx,idx" report spec into (name, indices).

    Raises:
        ConfigError: if the name is missing or no valid index remains.
    """
    name, sep, raw_keys = spec.partition(":")
    name = name.strip()
    if not sep or not name:
        raise ConfigError("report spec must look like name:idx[,idx...]: %r" % spec)
    keys = parse_key_indices(raw_keys)
    if not keys:
        raise ConfigError("report %r has no valid key index" % name)
    return name, keys


@dataclass
class RunConfig:
    """
    Values the pipeline needs, however sourced.

    Attributes:
        input_path: file or directory to process.
        output_dir: directory receiving one artifact per report.
        procs: worker pool size, fixed for the whole run.
        comma: one-character field separator.
        reports: ordered (name, key indices) pairs, one per report.
        buffer_size: buffered reader size per file, in bytes.
        output_format: "text" or "json".
        backend: "threads" or "ray".
    """

    input_path: str
    output_dir: str
    procs: int
    comma: str
    reports: List[Tuple[str, List[int]]] = field(default_factory=list)
    buffer_size: int = DEFAULT_CONFIG["pipeline"]["buffer_size"]
    output_format: str = "text"
    backend: str = "threads"

    @classmethod
    def from_dict(cls, overrides: Optional[Dict[str, Any]] = None) -> "RunConfig":
        """
        Build a validated config from DEFAULT_CONFIG["pipeline"] updated with
        `overrides` (keys as in DEFAULT_CONFIG; None values are ignored).

        Raises:
            ConfigError: on any invalid value.
        """
        values = copy.deepcopy(DEFAULT_CONFIG["pipeline"])
        for key, value in (overrides or {}).items():
            if key not in values:
                raise ConfigError("unknown config key: %s" % key)
            if value is not None:
                values[key] = value

        reports = []
        keys = parse_key_indices(str(values["keys"]))
        if not keys:
            raise ConfigError("no valid key index in %r" % values["keys"])
        reports.append((DEFAULT_REPORT_NAME, keys))
        for spec in values["reports"]:
            reports.append(parse_report_spec(spec))

        try:
            procs = int(values["procs"])
            buffer_size = int(values["buffer_size"])
        except (TypeError, ValueError) as e:
            raise ConfigError("invalid number in config: %s" % e)

        config = cls(
            input_path=values["in"],
            output_dir=values["out"],
            procs=procs,
            comma=values["comma"],
            reports=reports,
            buffer_size=buffer_size,
            output_format=values["output_format"],
            backend=values["backend"],
        )
        config.validate()
        return config

    def validate(self) -> None:
        if len(self.comma) != 1 or self.comma in '\r\n"':
            raise ConfigError("invalid separator: %r" % self.comma)
        if self.procs < 1:
            raise ConfigError("procs must be >= 1, got %d" % self.procs)
        if self.buffer_size <= 0:
            raise ConfigError("buffer_size must be positive")
        if self.output_format not in OUTPUT_FORMATS:
            raise ConfigError("unknown output format: %s" % self.output_format)
        if self.backend not in BACKENDS:
            raise ConfigError("unknown backend: %s" % self.backend)
        if not self.reports:
            raise ConfigError("at least one report is required")
        names = [name for name, _ in self.reports]
        if len(set(names)) != len(names):
            raise ConfigError("report names must be unique: %s" % names)
        for name, keys in self.reports:
            if not keys:
                raise ConfigError("report %r has no valid key index" % name)
