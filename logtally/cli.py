"""
cli.py

Command line entry point:

- run: aggregate a file or a directory of files and write one result file per
  report. Exits with status 2, before any worker starts, on an invalid
  configuration or an unreadable input path.
- generate: write synthetic access logs for trying the pipeline out.
"""

import argparse
import logging
import sys
from typing import List, Optional

from logtally.core_logic import run_pipeline
from logtally.data_processing import LogGenerator, list_input_files, write_log_files
from logtally.utils import DEFAULT_CONFIG, ConfigError, RunConfig

logger = logging.getLogger("cli")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


# ---------------- CLI ----------------

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    defaults = DEFAULT_CONFIG["pipeline"]
    parser = argparse.ArgumentParser(
        prog="logtally",
        description="Count keys built from fields of delimited log files, in parallel",
    )
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="aggregate a file or a directory of files")
    run.add_argument("--in", dest="input_path", default=defaults["in"],
                     help="input file or directory (not recursed)")
    run.add_argument("--out", dest="output_dir", default=defaults["out"],
                     help="output directory")
    run.add_argument("--procs", type=int, default=defaults["procs"],
                     help="number of workers")
    run.add_argument("--comma", default=defaults["comma"], help="field separator")
    run.add_argument("--keys", default=defaults["keys"],
                     help="comma separated key-field indices of the 'quick' report")
    run.add_argument(
        "--report",
        action="append",
        default=[],
        metavar="NAME:KEYS",
        help="extra report, e.g. by_status:1,3 (repeatable)",
    )
    run.add_argument("--format", dest="output_format", choices=["text", "json"],
                     default=defaults["output_format"])
    run.add_argument("--backend", choices=["threads", "ray"],
                     default=defaults["backend"])

    gen = sub.add_parser("generate", help="write synthetic access logs")
    gen.add_argument("out_dir")
    gen.add_argument("--files", type=int, default=4)
    gen.add_argument("--lines", type=int, default=1000)
    gen.add_argument("--compress", choices=["gz", "bz2"], default=None)
    gen.add_argument("--seed", type=int, default=None)
    gen.add_argument("--malformed-rate", type=float, default=0.0)

    return parser.parse_args(argv)


# ---------------- Commands ----------------

def cmd_run(args: argparse.Namespace) -> int:
    try:
        config = RunConfig.from_dict(
            {
                "in": args.input_path,
                "out": args.output_dir,
                "procs": args.procs,
                "comma": args.comma,
                "keys": args.keys,
                "reports": args.report,
                "output_format": args.output_format,
                "backend": args.backend,
            }
        )
        files = list_input_files(config.input_path)
    except ConfigError as e:
        logger.error("invalid configuration: %s", e)
        return 2
    except OSError as e:
        logger.error("cannot read input %s: %s", args.input_path, e)
        return 2

    if config.backend == "ray":
        from logtally.distributed import run_pipeline_ray

        try:
            run_pipeline_ray(config, files)
        except ConfigError as e:
            logger.error("invalid configuration: %s", e)
            return 2
    else:
        run_pipeline(config, files)
    return 0


def cmd_generate(args: argparse.Namespace) -> int:
    generator = LogGenerator(seed=args.seed, malformed_rate=args.malformed_rate)
    write_log_files(
        args.out_dir,
        generator,
        num_files=args.files,
        lines_per_file=args.lines,
        compress=args.compress,
    )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format=LOG_FORMAT)
    if args.command == "generate":
        return cmd_generate(args)
    return cmd_run(args)


if __name__ == "__main__":
    sys.exit(main())
