"""Command-line entry point for reviewmatch batch runs."""

import argparse
import sys
from typing import List, Optional

from .config import PipelineConfig, PrepareConfig
from .pipeline import prepare_inputs, run_pipeline
from .propensity import PropensityFitError
from .session import create_spark_session


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reviewmatch",
        description="Propensity and text-similarity matching over review data.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    prepare = sub.add_parser("prepare", help="Build the feature table and term matrix")
    prepare.add_argument("--config", required=True, help="PrepareConfig JSON file")
    prepare.add_argument("--input", dest="input_path", help="Cleaned review table")
    prepare.add_argument("--features", dest="features_path", help="Output feature table path")
    prepare.add_argument("--terms", dest="terms_path", help="Output term matrix path")
    prepare.add_argument("--quiet", action="store_true", help="Suppress progress output")

    run = sub.add_parser("run", help="Fit propensity scores, match and report")
    run.add_argument("--config", help="PipelineConfig JSON file")
    run.add_argument("--features", dest="features_path", help="Feature table path")
    run.add_argument("--terms", dest="terms_path", help="Term matrix path")
    run.add_argument("--output", dest="output_dir", help="Output directory")
    run.add_argument("--seed", type=int, help="Tie-break seed for text matching")
    run.add_argument("--direction", choices=["first_to_second", "second_to_first", "both"])
    run.add_argument("--chunk-size", dest="chunk_size", type=int)
    run.add_argument("--checkpoint-dir", dest="checkpoint_dir", help="Resumable per-chunk results")
    run.add_argument("--quiet", action="store_true", help="Suppress progress output")

    parser.add_argument("--master", default="local[*]", help="Spark master URL")
    return parser


def _overrides(args: argparse.Namespace, names: List[str]) -> dict:
    values = {name: getattr(args, name) for name in names if getattr(args, name, None) is not None}
    if args.quiet:
        values["verbose"] = False
    return values


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    if args.command == "prepare":
        data = PrepareConfig.from_json(args.config).to_dict()
        data.update(_overrides(args, ["input_path", "features_path", "terms_path"]))
        config = PrepareConfig.from_dict(data)
    else:
        data = PipelineConfig.from_json(args.config).to_dict() if args.config else {}
        data.update(_overrides(
            args,
            ["features_path", "terms_path", "output_dir", "seed", "direction",
             "chunk_size", "checkpoint_dir"],
        ))
        config = PipelineConfig.from_dict(data)

    spark = create_spark_session("reviewmatch", master=args.master)
    try:
        if args.command == "prepare":
            prepare_inputs(spark, config)
        else:
            run_pipeline(spark, config)
    except (PropensityFitError, ValueError) as exc:
        print(f"reviewmatch: error: {exc}", file=sys.stderr)
        return 1
    finally:
        spark.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
