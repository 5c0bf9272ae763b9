import bz2
import gzip
import logging
import os
import queue
import random

import pytest

from logtally.core_logic import (
    SENTINEL,
    Worker,
    WorkerPool,
    build_pipeline,
    make_workers,
    run_pipeline,
)
from logtally.data_processing import list_input_files
from logtally.parsers import CSVParser
from logtally.reports import KeyTallyReport, ReportManager
from logtally.utils import RunConfig


def make_worker(worker_id=0, keys=(0,)):
    manager = ReportManager()
    manager.register_report(KeyTallyReport(list(keys)))
    return Worker(worker_id, manager, CSVParser(","), buffer_size=64)


def counts(worker):
    return worker.report_manager.reports[0].counts()


def config_for(in_dir, out_dir, procs, **extra):
    values = {"in": in_dir, "out": out_dir, "procs": procs, "keys": "1,3"}
    values.update(extra)
    return RunConfig.from_dict(values)


def test_process_counts_records_and_bytes(write_file):
    path = write_file("a.csv", b"a,1\nb,2\na,3\n")
    worker = make_worker()
    worker.process(path)
    assert counts(worker) == {"a": 2, "b": 1}
    assert worker.stats.files == 1
    assert worker.stats.records == 3
    assert worker.stats.bytes == 12
    assert worker.stats.bytes_compressed == 12


@pytest.mark.parametrize("name", ["a.log.gz", "a.log.bz2"])
def test_process_compressed(write_file, name):
    data = b"x,1\ny,2\nx,3\n" * 100
    path = write_file(name, data)
    worker = make_worker()
    worker.process(path)
    assert counts(worker) == {"x": 200, "y": 100}
    assert worker.stats.bytes == len(data)
    assert worker.stats.bytes_compressed == os.path.getsize(path)


def test_malformed_record_does_not_stop_the_file(write_file, caplog):
    path = write_file("a.csv", b'a,1\nb,"2"x\nc,3\n')
    worker = make_worker()
    with caplog.at_level(logging.WARNING, logger="core_logic"):
        worker.process(path)
    assert counts(worker) == {"a": 1, "c": 1}
    assert worker.stats.records == 2
    assert worker.stats.bytes == 15
    assert "failed to parse" in caplog.text


def test_missing_file_is_skipped(tmp_path, caplog):
    worker = make_worker()
    with caplog.at_level(logging.ERROR, logger="core_logic"):
        assert worker.handle(str(tmp_path / "missing.csv")) is False
    assert worker.stats.files == 0
    assert "failed to process" in caplog.text


def test_corrupt_compressed_header_contributes_nothing(tmp_path):
    bad = tmp_path / "bad.log.gz"
    bad.write_bytes(b"this is not gzip data\n")
    worker = make_worker()
    assert worker.handle(str(bad)) is False
    assert counts(worker) == {}
    assert worker.stats.files == 0
    assert worker.stats.bytes == 0


@pytest.mark.parametrize(
    "suffix,compress",
    [(".gz", gzip.compress), (".bz2", lambda data: bz2.compress(data, compresslevel=1))],
)
def test_stream_cut_short_keeps_counted_records(tmp_path, suffix, compress):
    rnd = random.Random(9)
    rows = 40000
    data = b"".join(b"%d,%d\n" % (rnd.randint(0, 10 ** 6), i) for i in range(rows))
    packed = compress(data)
    path = tmp_path / ("cut.log" + suffix)
    path.write_bytes(packed[: len(packed) // 2])

    worker = make_worker()
    assert worker.handle(str(path)) is False
    assert worker.stats.files == 0
    assert worker.stats.bytes_compressed == 0
    assert 0 < worker.stats.records < rows
    assert worker.stats.bytes > 0
    assert sum(counts(worker).values()) == worker.stats.records


def test_run_stops_at_sentinel():
    worker = make_worker(worker_id=4)
    tasks, acks = queue.Queue(), queue.Queue()
    tasks.put(SENTINEL)
    tasks.put("never-read.csv")
    worker.run(tasks, acks)
    assert acks.get_nowait() == 4
    assert tasks.qsize() == 1


def test_pool_processes_every_file_once(write_file):
    paths = [write_file("f%d.csv" % i, b"k,%d\n" % i * (i + 1)) for i in range(7)]
    parser, manager = CSVParser(","), ReportManager()
    manager.register_report(KeyTallyReport([0]))
    workers = make_workers(3, parser, manager, 1024)
    WorkerPool(workers).run(paths)
    assert sum(w.stats.files for w in workers) == 7
    manager.reduce()
    assert manager.reports[0].counts() == {"k": sum(range(1, 8))}


def test_workers_get_exclusive_clones():
    config = RunConfig.from_dict({"procs": 3})
    parser, manager = build_pipeline(config)
    workers = make_workers(config.procs, parser, manager, config.buffer_size)
    assert workers[0].report_manager is manager
    assert workers[0].parser is parser
    managers = {id(w.report_manager) for w in workers}
    parsers = {id(w.parser) for w in workers}
    reports = {id(r) for w in workers for r in w.report_manager.reports}
    assert len(managers) == len(parsers) == 3
    assert len(reports) == 3


def test_pool_requires_workers():
    with pytest.raises(ValueError):
        WorkerPool([])


@pytest.mark.parametrize("procs", [2, 3, 8])
def test_worker_count_invariance(log_dir, tmp_path, procs):
    single = run_pipeline(config_for(log_dir, str(tmp_path / "one"), 1))
    multi = run_pipeline(config_for(log_dir, str(tmp_path / "many"), procs))
    assert single.report_manager.reports[0].counts() == (
        multi.report_manager.reports[0].counts()
    )
    assert single.total == multi.total
    assert len(multi.per_worker) == procs


def test_run_pipeline_totals_and_output(log_dir, tmp_path):
    out_dir = tmp_path / "out"
    result = run_pipeline(
        config_for(log_dir, str(out_dir), 4, reports=["service:1"])
    )
    files = list_input_files(log_dir)
    assert result.total.files == len(files) == 8
    assert result.total.bytes_compressed == sum(os.path.getsize(f) for f in files)
    service = result.report_manager.reports[1].counts()
    assert 0 < sum(service.values()) == result.total.records
    assert result.total.records < 4 * 300 + 4 * 250

    assert result.output_paths == [
        str(out_dir / "result-quick.txt"),
        str(out_dir / "result-service.txt"),
    ]
    with open(result.output_paths[1]) as fp:
        written = dict(line.rsplit(",", 1) for line in fp.read().splitlines())
    assert {k: int(v) for k, v in written.items()} == service


def test_bad_file_among_good_ones(log_dir, tmp_path):
    files = list_input_files(log_dir)
    config = config_for(log_dir, str(tmp_path / "out"), 2)
    clean = run_pipeline(config, files, write_output=False)
    mixed = run_pipeline(
        config, files + [str(tmp_path / "missing.log")], write_output=False
    )
    assert mixed.total == clean.total
    assert mixed.report_manager.reports[0].counts() == (
        clean.report_manager.reports[0].counts()
    )
    assert not os.path.exists(tmp_path / "out")


def test_run_pipeline_missing_input(tmp_path):
    with pytest.raises(OSError):
        run_pipeline(config_for(str(tmp_path / "nope"), str(tmp_path), 2))
