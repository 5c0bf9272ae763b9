"""
distributed.py

Ray backend: the same clone-per-worker / single-threaded-reduce scheme as the
threaded pool, with each worker living in its own Ray actor process.

- WorkerActor: wraps a Worker built from an exclusive parser and manager clone.
- run_pipeline_ray: feeds paths to the actors, collects their managers and
  reduces them into the master.
"""

from typing import Dict, List, Optional, Sequence, Tuple
import logging

import ray

from logtally.core_logic import (
    PipelineResult,
    Worker,
    build_pipeline,
    reduce_results,
)
from logtally.data_processing import list_input_files
from logtally.parsers import Parser
from logtally.reports import ReportManager
from logtally.utils import ConfigError, RunConfig, WorkerStats

logger = logging.getLogger("distributed")


@ray.remote(num_cpus=1)
class WorkerActor:
    """
    Stateful actor owning one worker for the whole run.

    Methods:
        process(path): process one file; failures are logged, not raised.
        finish(): return (stats, report manager) once all files are done.
    """

    def __init__(
        self,
        worker_id: int,
        report_manager: ReportManager,
        parser: Parser,
        buffer_size: int,
    ) -> None:
        self._worker = Worker(worker_id, report_manager, parser, buffer_size)

    def process(self, path: str) -> bool:
        return self._worker.handle(path)

    def finish(self) -> Tuple[WorkerStats, ReportManager]:
        return self._worker.stats, self._worker.report_manager


def _dispatch(actors: List["ray.actor.ActorHandle"], files: Sequence[str]) -> None:
    """
    Give each actor at most one file at a time; wait for one to free up when
    all are busy.
    """
    idle = list(actors)
    pending: Dict["ray.ObjectRef", "ray.actor.ActorHandle"] = {}
    nfiles = len(files)
    for i, path in enumerate(files):
        if not idle:
            ready, _ = ray.wait(list(pending), num_returns=1)
            ray.get(ready[0])
            idle.append(pending.pop(ready[0]))
        logger.info("%d/%d (%d%%): +%s", i, nfiles, i * 100 // nfiles, path)
        actor = idle.pop()
        pending[actor.process.remote(path)] = actor
    ray.get(list(pending))


def run_pipeline_ray(
    config: RunConfig,
    files: Optional[Sequence[str]] = None,
    write_output: bool = True,
) -> PipelineResult:
    """
    Ray counterpart of core_logic.run_pipeline. Initializes Ray locally if it
    is not already running.

    Raises:
        ConfigError: if the cluster cannot hold one actor per worker.
    """
    if files is None:
        files = list_input_files(config.input_path)
    logger.info("%d files to process", len(files))

    if not ray.is_initialized():
        ray.init(num_cpus=config.procs, include_dashboard=False)
    cpus = ray.cluster_resources().get("CPU", 0)
    if cpus < config.procs:
        # each actor holds one CPU; the rest would never be scheduled
        raise ConfigError(
            "ray cluster has %s CPUs, fewer than procs=%d" % (cpus, config.procs)
        )

    parser, manager = build_pipeline(config)
    actors = [
        WorkerActor.remote(
            i, manager.clone(register=False), parser.clone(), config.buffer_size
        )
        for i in range(config.procs)
    ]
    _dispatch(actors, files)

    finished = ray.get([actor.finish.remote() for actor in actors])
    per_worker = [stats for stats, _ in finished]
    # keep the returned managers referenced until reduce() has run
    peers = [peer for _, peer in finished]
    for peer in peers:
        manager.adopt(peer)
    total = reduce_results(manager, per_worker)
    for actor in actors:
        ray.kill(actor)

    result = PipelineResult(total, per_worker, manager)
    if write_output:
        result.output_paths = manager.output(config.output_dir, config.output_format)
    return result
