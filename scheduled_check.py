"""
Standalone scheduled SPF monitoring script.

Run once per interval tier from cron (or any task scheduler).  Each run
checks every enabled MonitoringConfig on that tier, updates the stored
baselines and records change events.  Domains with auto-update enabled get
a pending flattening operation when a safe change is detected.

CRON EXAMPLE
============
  # Hourly, daily and weekly tiers
  5 * * * *  /path/to/venv/bin/python /path/to/spfwatch/scheduled_check.py --interval hourly
  15 6 * * * /path/to/venv/bin/python /path/to/spfwatch/scheduled_check.py --interval daily
  30 6 * * 1 /path/to/venv/bin/python /path/to/spfwatch/scheduled_check.py --interval weekly

  Always use the full path to the virtualenv Python interpreter so that
  dnspython and Flask-SQLAlchemy are available.  Cron does not inherit the
  web app environment; export DATABASE_URL in the command or source an
  env file first.

USAGE
=====
  # Check all daily-tier domains
  python scheduled_check.py --interval daily

  # Check a single domain (any user) on its tier
  python scheduled_check.py --interval hourly --domain example.com

  # Only one user's domains, with debug logging
  python scheduled_check.py --interval weekly --user alice --verbose

EXIT CODES
==========
  0 - Success (all checks ran, even if individual domains reported errors)
  1 - Fatal error (e.g. unable to create app context, database unreachable)
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timezone


# ---------------------------------------------------------------------------
# Argument parsing (done before app import so --help works without Flask)
# ---------------------------------------------------------------------------


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run scheduled SPF change monitoring for configured domains.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--interval",
        choices=("hourly", "daily", "weekly"),
        default="daily",
        help="Interval tier to run (default: daily).",
    )
    parser.add_argument(
        "--domain",
        metavar="HOSTNAME",
        default=None,
        help="Check a single domain instead of the whole tier.",
    )
    parser.add_argument(
        "--user",
        metavar="USER_ID",
        default=None,
        help="Only check domains owned by this user.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        default=False,
        help="Enable DEBUG-level logging output.",
    )
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Logging setup (before Flask to capture early errors)
# ---------------------------------------------------------------------------


def _configure_logging(verbose: bool) -> logging.Logger:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        stream=sys.stdout,
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%SZ",
    )
    return logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """Execute one scheduled monitoring run.

    Returns:
        Integer exit code: 0 for success, 1 for fatal error.
    """
    args = _parse_args(argv)
    logger = _configure_logging(args.verbose)

    run_start = datetime.now(timezone.utc)
    logger.info("=== scheduled_check.py (%s) started at %s ===", args.interval, run_start.isoformat())

    try:
        from spfwatch import create_app

        flask_app = create_app()
    except Exception:
        logger.exception("FATAL: Failed to create Flask application.")
        return 1

    with flask_app.app_context():
        from spfwatch.spf.engine import run_scheduled_checks

        try:
            results = run_scheduled_checks(args.interval, domain=args.domain, user_id=args.user)
        except Exception:
            logger.exception("FATAL: Scheduled run failed.")
            return 1

        for result in results:
            logger.info(
                "DONE  %-50s  status=%-8s  changes=%d  errors=%d  next=%s",
                result.domain,
                result.status,
                len(result.changes),
                len(result.errors),
                result.next_check.isoformat() if result.next_check else "n/a",
            )

    run_end = datetime.now(timezone.utc)
    logger.info(
        "=== Run complete: checked=%d  total_elapsed=%.1fs  ended=%s ===",
        len(results),
        (run_end - run_start).total_seconds(),
        run_end.isoformat(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
