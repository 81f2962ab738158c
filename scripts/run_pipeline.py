#!/usr/bin/env python

import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parent.parent))

import argparse
import logging

from twop_analysis import run_full_pipeline, setup_logging


def main():
    parser = argparse.ArgumentParser(
        description="Run two-photon analysis pipeline (selectable stages)"
    )

    parser.add_argument(
        "-c", "--config",
        required=True,
        help="Path to YAML config file",
    )

    parser.add_argument("--skip-motion", action="store_true")
    parser.add_argument("--skip-traces", action="store_true")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args()

    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    run_full_pipeline(
        args.config,
        run_motion=not args.skip_motion,
        run_traces=not args.skip_traces,
    )


if __name__ == "__main__":
    main()
