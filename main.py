"""
AutoTest orchestrator - main entry point.

Runs the HTTP server (webhook intake + background scheduler) or, with
--release, recomputes the grades of one deliverable and exits.
"""

import argparse
import json
import sys

from dotenv import load_dotenv

# Load .env before src.infra.config reads the environment
load_dotenv()

import uvicorn  # noqa: E402

from src.infra import config  # noqa: E402
from src.infra.logging_config import setup_logging  # noqa: E402


def parse_args():
    parser = argparse.ArgumentParser(
        description="AutoTest - continuous testing orchestrator for student repositories",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve webhooks on port 8000
  python main.py --host 0.0.0.0 --port 8000

  # Dry-run a grade release
  python main.py --release d1

  # Commit a grade release
  python main.py --release d1 --commit

  # Release with retro adjustments from a survey export
  python main.py --release d1 --survey retro.csv --contributors forms.txt
        """
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Bind address. Default=127.0.0.1"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Bind port. Default=8000"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=config.LOG_LEVEL,
        help="DEBUG, INFO, WARNING, ERROR. Default from LOG_LEVEL"
    )
    parser.add_argument(
        "--release",
        type=str,
        default=None,
        metavar="DELIVERABLE_ID",
        help="Recompute all grades for a deliverable instead of serving"
    )
    parser.add_argument(
        "--commit",
        action="store_true",
        default=False,
        help="With --release: persist the new grades (default is a dry run)"
    )
    parser.add_argument(
        "--test-user",
        type=str,
        default=None,
        help="With --release: person whose grade is always persisted"
    )
    parser.add_argument(
        "--survey",
        type=str,
        default=None,
        metavar="CSV",
        help="With --release: team survey export used for retro adjustments"
    )
    parser.add_argument(
        "--contributors",
        type=str,
        default=None,
        metavar="FILE",
        help="With --survey: person ids with a contribution form, one per line"
    )
    return parser.parse_args()


def run_release(args, logger) -> int:
    from src.grading.retro import load_contributors, load_survey
    from src.scheduler.errors import ConfigurationError
    from src.scheduler.service import AutoTestService

    try:
        survey = load_survey(args.survey) if args.survey else None
        contributors = load_contributors(args.contributors) if args.contributors else []
        service = AutoTestService.create()
        summary = service.release_deliverable(
            args.release,
            commit=args.commit,
            test_user=args.test_user,
            survey=survey,
            contributors=contributors,
        )
    except ConfigurationError as e:
        logger.error(f"Release aborted: {e}")
        return 1

    print(json.dumps(summary.to_dict(), indent=2))
    return 0 if not summary.failures else 2


def main() -> None:
    args = parse_args()
    logger = setup_logging(args.log_level)

    if args.release:
        sys.exit(run_release(args, logger))

    logger.info(f"Starting AutoTest server on {args.host}:{args.port}")
    uvicorn.run("src.api.main:app", host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
