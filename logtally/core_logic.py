"""
core_logic.py

Contains the worker pool and the reduce phase:

- Worker: owns one parser, one report manager and its stats; processes one
  file at a time.
- WorkerPool: fixed set of workers fed from one bounded task queue.
- build_pipeline: master parser + report manager for a RunConfig.
- run_pipeline: dispatch, join, reduce and output for one run.

Accuracy is best-effort: a file that cannot be opened and a record that cannot
be decoded are logged and left out of the totals. Nothing is retried.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple
import io
import logging
import os
import queue
import threading
import zlib

from logtally.data_processing import list_input_files, open_decompressed
from logtally.parsers import CSVParser, Parser
from logtally.reports import KeyTallyReport, ReportManager
from logtally.utils import (
    DEFAULT_CONFIG,
    EndOfStream,
    ParseError,
    RunConfig,
    WorkerStats,
)

logger = logging.getLogger("core_logic")

# Queued once per worker after the last file; a worker exits when it sees it.
SENTINEL = None


class Worker:
    """
    Processes files sequentially with its own parser and report manager.

    Nothing a worker holds is touched by another thread while the pool runs,
    so the per-record path takes no locks.
    """

    def __init__(
        self,
        worker_id: int,
        report_manager: ReportManager,
        parser: Parser,
        buffer_size: int = DEFAULT_CONFIG["pipeline"]["buffer_size"],
    ) -> None:
        self.id = worker_id
        self.report_manager = report_manager
        self.parser = parser
        self.buffer_size = buffer_size
        self.stats = WorkerStats()

    def run(self, tasks: queue.Queue, acks: queue.Queue) -> None:
        """
        Pull paths from `tasks` until the sentinel, then acknowledge on `acks`.
        """
        while True:
            path = tasks.get()
            if path is SENTINEL:
                acks.put(self.id)
                break
            self.handle(path)

    def handle(self, path: str) -> bool:
        """
        Process one file, logging any failure instead of raising it.

        Returns:
            True if the file was processed to the end.
        """
        try:
            self.process(path)
            return True
        except (OSError, EOFError, zlib.error) as e:
            logger.error("failed to process %s: %s", path, e)
        except Exception as e:
            logger.exception("unexpected failure processing %s: %s", path, e)
        return False

    def process(self, path: str) -> None:
        """
        Feed every record of `path` into the report manager.

        Malformed records are logged and skipped. Records already counted stay
        counted if reading fails part way.

        Raises:
            OSError: stat/open/decompression failure.
            EOFError: truncated compressed stream.
        """
        logger.info("[%d] processing %s...", self.id, path)
        size = os.stat(path).st_size
        with io.BufferedReader(open_decompressed(path), self.buffer_size) as fin:
            self.parser.reset(fin)
            while True:
                try:
                    nbytes, rec = self.parser.next_record()
                except EndOfStream:
                    break
                except ParseError as e:
                    logger.warning("failed to parse: file=%s, %s", path, e)
                    self.stats.bytes += e.nbytes
                    continue
                self.report_manager.process_record(rec)
                self.stats.bytes += nbytes
                self.stats.records += 1
        self.stats.bytes_compressed += size
        self.stats.files += 1

    def __repr__(self) -> str:
        return "Worker(id=%d, %s)" % (self.id, self.stats)


class WorkerPool:
    """
    Runs a fixed set of workers over a list of files.

    The bounded task queue (capacity = number of workers) is the only shared
    structure: the producer blocks when it is full, workers block when it is
    empty. run() returns only after every worker has acknowledged its sentinel.
    """

    def __init__(self, workers: Sequence[Worker]) -> None:
        if not workers:
            raise ValueError("WorkerPool needs at least one worker")
        self.workers = list(workers)
        self.tasks: queue.Queue = queue.Queue(maxsize=len(self.workers))
        self.acks: queue.Queue = queue.Queue(maxsize=len(self.workers))
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        for worker in self.workers:
            thread = threading.Thread(
                target=worker.run,
                args=(self.tasks, self.acks),
                name="worker-%d" % worker.id,
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def feed(self, files: Sequence[str]) -> None:
        nfiles = len(files)
        for i, path in enumerate(files):
            logger.info("%d/%d (%d%%): +%s", i, nfiles, i * 100 // nfiles, path)
            self.tasks.put(path)

    def join(self) -> None:
        """Send one sentinel per worker and wait for every acknowledgment."""
        for _ in self.workers:
            self.tasks.put(SENTINEL)
        for _ in self.workers:
            worker_id = self.acks.get()
            logger.debug("worker %d finished", worker_id)
        for thread in self._threads:
            thread.join()
        self._threads = []

    def run(self, files: Sequence[str]) -> None:
        self.start()
        self.feed(files)
        self.join()


def build_pipeline(config: RunConfig) -> Tuple[CSVParser, ReportManager]:
    """
    Create the master parser and report manager for `config`.
    """
    parser = CSVParser(config.comma)
    manager = ReportManager()
    for name, keys in config.reports:
        manager.register_report(KeyTallyReport(keys, name=name))
    return parser, manager


def make_workers(
    nworkers: int, parser: Parser, manager: ReportManager, buffer_size: int
) -> List[Worker]:
    """
    Worker 0 uses the master objects; every other worker gets clones, all made
    before any worker starts.
    """
    workers = [Worker(0, manager, parser, buffer_size)]
    for i in range(1, nworkers):
        workers.append(Worker(i, manager.clone(), parser.clone(), buffer_size))
    return workers


@dataclass
class PipelineResult:
    """
    Outcome of one run.

    Attributes:
        total: stats summed over all workers.
        per_worker: each worker's own stats, by worker id.
        report_manager: the master manager after reduce.
        output_paths: files written, empty when output was skipped.
    """

    total: WorkerStats
    per_worker: List[WorkerStats]
    report_manager: ReportManager
    output_paths: List[str] = field(default_factory=list)


def reduce_results(
    manager: ReportManager, per_worker: Sequence[WorkerStats]
) -> WorkerStats:
    """
    Single-threaded reduce: sum worker stats and fold every clone's reports
    into `manager`. Call only after all workers have finished.
    """
    total = WorkerStats()
    for worker_id, stats in enumerate(per_worker):
        logger.info("Worker[%d]: %s", worker_id, stats)
        total.merge(stats)
    manager.reduce()
    logger.info("Total: %s", total)
    return total


def run_pipeline(
    config: RunConfig,
    files: Optional[Sequence[str]] = None,
    write_output: bool = True,
) -> PipelineResult:
    """
    Run one aggregation over `files` (default: the files under
    config.input_path) with the threaded pool.

    Raises:
        OSError: if the input path cannot be read. Raised before any worker
            starts.
    """
    if files is None:
        files = list_input_files(config.input_path)
    logger.info("%d files to process", len(files))

    parser, manager = build_pipeline(config)
    workers = make_workers(config.procs, parser, manager, config.buffer_size)
    WorkerPool(workers).run(files)

    per_worker = [w.stats for w in workers]
    total = reduce_results(manager, per_worker)
    result = PipelineResult(total, per_worker, manager)
    if write_output:
        result.output_paths = manager.output(config.output_dir, config.output_format)
    return result
