"""
data_processing.py

Input side of the pipeline plus a synthetic log generator.

Produces (and reads) delimited access-log rows in format:
  2025-09-20T12:34:56.789Z,webapp,/api/v1/items,200,12.34,u-12345

Functions:
- list_input_files: the task list for one input path (no recursion).
- open_decompressed: byte stream for a file, chosen by suffix.
- LogGenerator: yields log rows with configurable distributions.
- write_log_files: writes generated rows to plain, .gz or .bz2 files.
"""

from typing import BinaryIO, Iterator, List, Optional
import bz2
import gzip
import logging
import os
import random
from datetime import datetime, timedelta, timezone

logger = logging.getLogger("data_processing")

COMPRESSORS = {
    ".gz": gzip.open,
    ".bz2": bz2.open,
}


def list_input_files(path: str) -> List[str]:
    """
    Return the files to process for `path`.

    A single file gives a one-element list. A directory gives its regular
    files sorted by name; subdirectories are not entered.

    Raises:
        OSError: if `path` cannot be read.
    """
    if not os.path.isdir(path):
        os.stat(path)
        return [path]
    files = []
    for name in sorted(os.listdir(path)):
        full = os.path.join(path, name)
        if os.path.isdir(full):
            continue
        files.append(full)
    return files


def open_decompressed(path: str) -> BinaryIO:
    """
    Open `path` for binary reading, decompressing by suffix: ".gz" -> gzip,
    ".bz2" -> bzip2, anything else -> raw bytes. Content is never sniffed.

    The compressed header is read up front so a corrupt header fails here,
    before any record of the file is counted.

    Raises:
        OSError: open failure or bad compressed header.
        EOFError: truncated compressed header.
    """
    _, ext = os.path.splitext(path)
    opener = COMPRESSORS.get(ext)
    if opener is None:
        return open(path, "rb", buffering=0)
    stream = opener(path, "rb")
    try:
        stream.peek(1)
    except BaseException:
        stream.close()
        raise
    return stream


class LogGenerator:
    """
    Simple probabilistic generator of delimited access-log rows.

    Supports multiple services, endpoints and user distributions, plus an
    optional share of malformed rows (a stray character after a closing quote)
    for exercising the lossy path.
    """

    def __init__(
        self,
        *,
        services: Optional[List[str]] = None,
        endpoints: Optional[List[str]] = None,
        seed: Optional[int] = None,
        comma: str = ",",
        error_rate: float = 0.02,
        malformed_rate: float = 0.0,
    ) -> None:
        """
        Initialize generator.

        Args:
            services: List of service names.
            endpoints: List of endpoints.
            seed: Random seed for reproducible output.
            comma: Field separator.
            error_rate: Probability of a server error (5xx) status.
            malformed_rate: Probability that a row is malformed.
        """
        self._random = random.Random(seed)
        self.services = services or ["webapp", "auth", "payments", "search"]
        self.endpoints = endpoints or [
            "/",
            "/api/v1/items",
            "/api/v1/items/{id}",
            "/api/v1/search",
            "/login",
            "/checkout",
        ]
        self.comma = comma
        self.error_rate = error_rate
        self.malformed_rate = malformed_rate
        self.user_counter = 0
        self._clock = datetime(2025, 9, 20, tzinfo=timezone.utc)

    def _timestamp(self) -> str:
        self._clock += timedelta(milliseconds=self._random.randint(1, 500))
        return self._clock.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def _random_endpoint(self) -> str:
        """Return endpoint pattern, possibly with id substituted."""
        ep = self._random.choice(self.endpoints)
        if "{id}" in ep:
            return ep.replace("{id}", str(self._random.randint(1, 10000)))
        return ep

    def _random_status(self) -> int:
        r = self._random.random()
        if r < self.error_rate:
            return self._random.choice([500, 502, 503, 504])
        if r < self.error_rate + 0.02:
            return self._random.choice([400, 401, 403, 404])
        return 200

    def _random_latency(self) -> float:
        """Simulate latency in ms; mostly typical with an occasional heavy tail."""
        if self._random.random() < 0.95:
            return max(1.0, self._random.gauss(60, 30))
        return max(10.0, self._random.gauss(600, 300))

    def _random_user(self) -> str:
        self.user_counter += 1
        return "u-%d" % (self.user_counter % 10000)

    def generate(self, count: int = 1000) -> Iterator[str]:
        """
        Generate `count` rows, without trailing newlines.
        """
        for _ in range(count):
            fields = [
                self._timestamp(),
                self._random.choice(self.services),
                self._random_endpoint(),
                str(self._random_status()),
                "%.2f" % self._random_latency(),
                self._random_user(),
            ]
            if self._random.random() < self.malformed_rate:
                fields[1] = '"%s"x' % fields[1]
            yield self.comma.join(fields)


def write_log_files(
    out_dir: str,
    generator: LogGenerator,
    num_files: int = 4,
    lines_per_file: int = 1000,
    compress: Optional[str] = None,
) -> List[str]:
    """
    Write `num_files` generated log files into `out_dir`.

    Args:
        compress: None for plain text, or "gz" / "bz2".

    Returns:
        Paths of the written files.
    """
    suffix = "" if compress is None else "." + compress
    if compress is not None and suffix not in COMPRESSORS:
        raise ValueError("unsupported compression: %s" % compress)
    os.makedirs(out_dir, exist_ok=True)
    paths = []
    for i in range(num_files):
        path = os.path.join(out_dir, "access-%04d.log%s" % (i, suffix))
        opener = COMPRESSORS.get(suffix, open)
        with opener(path, "wt", encoding="utf-8") as fp:
            for line in generator.generate(lines_per_file):
                fp.write(line + "\n")
        paths.append(path)
    logger.info("Wrote %d files to %s", num_files, out_dir)
    return paths
