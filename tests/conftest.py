import bz2
import gzip

import pytest

from logtally.data_processing import LogGenerator, write_log_files

OPENERS = {"": open, ".gz": gzip.open, ".bz2": bz2.open}


@pytest.fixture
def write_file(tmp_path):
    """Write `data` (bytes) to tmp_path/name, compressing by suffix."""

    def _write(name: str, data: bytes) -> str:
        path = tmp_path / name
        suffix = path.suffix if path.suffix in OPENERS else ""
        with OPENERS[suffix](str(path), "wb") as fp:
            fp.write(data)
        return str(path)

    return _write


@pytest.fixture
def log_dir(tmp_path):
    """A directory of generated logs: plain, gzip and bzip2, some malformed rows."""
    in_dir = tmp_path / "logs"
    write_log_files(str(in_dir), LogGenerator(seed=7, malformed_rate=0.01),
                    num_files=4, lines_per_file=300)
    gen = LogGenerator(seed=11, malformed_rate=0.01)
    for compress in ("gz", "bz2"):
        write_log_files(str(in_dir), gen, num_files=2, lines_per_file=250,
                        compress=compress)
    # not recursed into
    write_log_files(str(in_dir / "nested"), gen, num_files=1, lines_per_file=10)
    return str(in_dir)
