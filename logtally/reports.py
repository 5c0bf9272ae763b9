"""
reports.py

Pluggable key -> count accumulators and the manager that runs several of them
over the same record stream.

- Report: the contract every aggregation implements.
- CountingReport: shared key -> int accumulator with merge/clear/output.
- KeyTallyReport: keys a record by joining selected positional fields.
- ReportManager: ordered bundle of reports; clone() hands a worker an empty
  peer and reduce() folds every registered clone back in.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from itertools import count
from typing import Any, Dict, List, Sequence, Tuple
import logging
import os
import weakref

import ujson as json

logger = logging.getLogger("reports")

KEY_SEPARATOR = ","


class Report(ABC):
    """
    A named key -> count accumulator.

    merge() must be commutative and associative per key so totals do not depend
    on how records were partitioned across workers.
    """

    @abstractmethod
    def new(self) -> "Report":
        """Return a fresh, empty report of the same kind and configuration."""

    @abstractmethod
    def add(self, rec: Any) -> None:
        """Ingest one record. Records of an unexpected shape are ignored."""

    @abstractmethod
    def merge(self, other: "Report") -> None:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def output(self, path: str) -> None:
        ...


class CountingReport(Report):
    """
    Base for reports whose state is a plain key -> int mapping.

    output() writes "<key>,<count>" lines, or a JSON object when the path ends
    with ".json". Line order is not guaranteed.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self.result: Dict[str, int] = defaultdict(int)

    @property
    def name(self) -> str:
        return self._name

    def merge(self, other: Report) -> None:
        if type(other) is not type(self):
            raise TypeError(
                "cannot merge %s into %s" % (type(other).__name__, type(self).__name__)
            )
        for key, value in other.result.items():
            self.result[key] += value

    def clear(self) -> None:
        self.result = defaultdict(int)

    def counts(self) -> Dict[str, int]:
        """Snapshot of the accumulator as a plain dict."""
        return dict(self.result)

    def output(self, path: str) -> None:
        with open(path, "w", encoding="utf-8") as fp:
            if path.endswith(".json"):
                json.dump(self.counts(), fp)
                return
            for key, value in self.result.items():
                fp.write("%s%s%d\n" % (key, KEY_SEPARATOR, value))

    def __len__(self) -> int:
        return len(self.result)


class KeyTallyReport(CountingReport):
    """
    Count records by a key made of selected positional fields.

    The key joins the fields at `keys` (in order) with a comma. An index past
    the end of a record contributes an empty segment. A comma inside a field
    value makes keys ambiguous; this is not escaped.
    """

    def __init__(self, keys: Sequence[int], name: str = "quick") -> None:
        if not keys:
            raise ValueError("KeyTallyReport needs at least one key index")
        super().__init__(name)
        self.keys = list(keys)

    def new(self) -> "KeyTallyReport":
        return KeyTallyReport(self.keys, self.name)

    def key_for(self, rec: Sequence[str]) -> str:
        n = len(rec)
        return KEY_SEPARATOR.join(rec[k] if k < n else "" for k in self.keys)

    def add(self, rec: Any) -> None:
        if not isinstance(rec, (list, tuple)):
            return
        self.result[self.key_for(rec)] += 1

    def __repr__(self) -> str:
        return "KeyTallyReport(name=%r, keys=%r)" % (self.name, self.keys)


class ReportManager:
    """
    Ordered set of reports fed from one record stream.

    A manager tracks the clones it spawned in a weak registry: the worker that
    receives a clone owns it, the spawning manager only keeps a handle so
    reduce() can find it later.
    """

    _handles = count(1)

    def __init__(self) -> None:
        self.reports: List[Report] = []
        self._clones: "weakref.WeakValueDictionary[int, ReportManager]" = (
            weakref.WeakValueDictionary()
        )

    def register_report(self, report: Report) -> None:
        self.reports.append(report)

    def clone(self, register: bool = True) -> "ReportManager":
        """
        Return a manager holding one empty peer per report, in the same order.

        Args:
            register: record the clone for reduce(). Pass False when the clone
                will be shipped elsewhere and brought back with adopt().
        """
        peer = ReportManager()
        for report in self.reports:
            peer.register_report(report.new())
        if register:
            self._register(peer)
        return peer

    def adopt(self, peer: "ReportManager") -> int:
        """
        Register a manager produced outside clone() (e.g. returned by a remote
        worker) so the next reduce() folds it in.

        Returns:
            The registry handle.
        """
        if len(peer.reports) != len(self.reports):
            raise ValueError(
                "cannot adopt manager with %d reports into one with %d"
                % (len(peer.reports), len(self.reports))
            )
        for mine, theirs in zip(self.reports, peer.reports):
            if type(mine) is not type(theirs) or mine.name != theirs.name:
                raise ValueError("report mismatch: %r vs %r" % (mine, theirs))
        return self._register(peer)

    def _register(self, peer: "ReportManager") -> int:
        handle = next(self._handles)
        self._clones[handle] = peer
        return handle

    def clones(self) -> List[Tuple[int, "ReportManager"]]:
        """Live registered clones, in registration order."""
        return sorted(self._clones.items())

    def process_record(self, rec: Any) -> None:
        for report in self.reports:
            report.add(rec)

    def reduce(self) -> None:
        """
        Merge every live clone's reports into ours, clearing each merged report
        so a second reduce() adds nothing. Call only after all workers joined.
        """
        peers = self.clones()
        for i, report in enumerate(self.reports):
            for handle, peer in peers:
                report.merge(peer.reports[i])
                peer.reports[i].clear()
        logger.debug("Reduced %d clones into %d reports", len(peers), len(self.reports))

    def output_path(self, out_dir: str, report: Report, fmt: str = "text") -> str:
        ext = "json" if fmt == "json" else "txt"
        return os.path.join(out_dir, "result-%s.%s" % (report.name, ext))

    def output(self, out_dir: str, fmt: str = "text") -> List[str]:
        """
        Write each report to out_dir/result-<name>.<txt|json>.

        Returns:
            The written paths, in report order.
        """
        os.makedirs(out_dir, exist_ok=True)
        paths = []
        for report in self.reports:
            path = self.output_path(out_dir, report, fmt)
            report.output(path)
            logger.info("Wrote report %s to %s", report.name, path)
            paths.append(path)
        return paths

    def __getstate__(self) -> Dict[str, Any]:
        # the clone registry never crosses a process boundary
        return {"reports": self.reports}

    def __setstate__(self, state: Dict[str, Any]) -> None:
        self.reports = state["reports"]
        self._clones = weakref.WeakValueDictionary()
