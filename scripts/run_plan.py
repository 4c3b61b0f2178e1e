#!/usr/bin/env python3
"""
Run the prompts of a plan file from the command line.

Loads a YAML/JSON plan, then runs the requested prompts in order (all of
them by default) on the current machine, printing each execution record.

Usage:
    python scripts/run_plan.py plan.yaml
    python scripts/run_plan.py plan.yaml --prompts 1 2 --working-dir ./out
    python scripts/run_plan.py plan.yaml --continue-on-error --max-retries 0
"""

import argparse
import logging
import sys
from pathlib import Path

from planrunner.config import ExecutorConfig
from planrunner.errors import PlanRunnerError
from planrunner.executor.report import render_document, render_record, render_sequence
from planrunner.runtime import PlanRunner


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Execute the prompts of a structured plan file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("plan", type=Path, help="Plan file (.yaml, .yml or .json)")
    parser.add_argument(
        "--prompts",
        type=int,
        nargs="+",
        help="Prompt numbers to run, in order (default: all)",
    )
    parser.add_argument(
        "--working-dir",
        type=Path,
        default=None,
        help="Directory steps run in (default: current directory)",
    )
    parser.add_argument(
        "--continue-on-error",
        action="store_true",
        help="Keep going after a prompt fails",
    )
    parser.add_argument("--max-retries", type=int, default=None)
    parser.add_argument("--retry-delay", type=float, default=None)
    parser.add_argument("--step-timeout", type=float, default=None)
    parser.add_argument("--database-url", default="")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    overrides = {
        "max_retries": args.max_retries,
        "retry_delay": args.retry_delay,
        "step_timeout": args.step_timeout,
    }
    config = ExecutorConfig(
        working_dir=str(args.working_dir) if args.working_dir else None,
        database_url=args.database_url,
        **{k: v for k, v in overrides.items() if v is not None},
    )

    runner = PlanRunner.from_executor_config(config)
    try:
        try:
            document = runner.store.load_file(args.plan)
        except PlanRunnerError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 2

        print(render_document(document))
        print("")

        numbers = args.prompts or [p.number for p in document.prompts]
        try:
            sequence = runner.executor.run_sequence(
                document.id,
                numbers,
                stop_on_error=not args.continue_on_error,
            )
        except PlanRunnerError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 2

        for outcome in sequence.outcomes:
            if outcome.execution_id is None:
                continue
            record = runner.executor.get_record(outcome.execution_id)
            prompt = document.get_prompt(outcome.prompt_number)
            if record is not None:
                print(render_record(record, title=prompt.title if prompt else ""))
                print("")

        print(render_sequence(sequence))
        return 0 if sequence.status.value == "completed" else 1
    finally:
        runner.close()


if __name__ == "__main__":
    sys.exit(main())
