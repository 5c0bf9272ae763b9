"""
logtally package initializer.

Parallel, best-effort tallying of keys built from fields of delimited log
files: each worker owns a parser and a report manager clone, and the clones
are reduced into one result after every worker has finished.
"""

__all__ = [
    "cli",
    "core_logic",
    "data_processing",
    "distributed",
    "parsers",
    "reports",
    "utils",
]
