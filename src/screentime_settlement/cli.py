"""
Screen-Time Settlement CLI

Commands:
  serve       - Run the API server
  init-db     - Create the schema
  settle      - Settle a week (defaults to the most recently completed one)
  reconcile   - Retry flagged reconciliations
  close-week  - Close a week's pool
"""

import argparse
import json
import os
import sys


def _print_json(data):
    print(json.dumps(data, indent=2, default=str))


def _build_state():
    from .api.server import AppState
    return AppState()


def cmd_serve(args):
    """Run the API server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Screen-Time Settlement on {host}:{port}")

    uvicorn.run(
        "screentime_settlement.api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_init_db(args):
    """Create the database schema."""
    from .persistence.database import get_database

    db = get_database(args.database_url)
    print(f"Schema ready ({'postgres' if db.is_postgres else 'sqlite'})")


def cmd_settle(args):
    """Settle a week."""
    state = _build_state()
    run = state.settlement.settle(args.week)

    summary = run.summary
    print(f"Settlement for week ending {run.week_end}")
    print("=" * 40)
    for name, value in summary.items():
        print(f"  {name}: {value}")
    if args.verbose:
        _print_json([r.to_dict() for r in run.results])
    if summary["failures"]:
        sys.exit(2)


def cmd_reconcile(args):
    """Retry flagged reconciliations."""
    state = _build_state()
    run = state.reconciliation.process_queue(
        limit=args.limit,
        week_end=args.week,
        user_id=args.user,
        dry_run=args.dry_run,
    )
    _print_json(run.to_dict())
    if run.failures:
        sys.exit(2)


def cmd_close_week(args):
    """Close a week's pool."""
    from .core.exceptions import NotFoundError

    state = _build_state()
    try:
        pool = state.pools.close_week_ending(args.week)
    except NotFoundError as e:
        print(f"Error: {e}")
        sys.exit(1)
    _print_json(pool.to_dict())


def main():
    parser = argparse.ArgumentParser(
        description="Screen-Time Settlement - weekly penalty settlement engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # init-db
    init_parser = subparsers.add_parser("init-db", help="Create the schema")
    init_parser.add_argument("--database-url", help="Overrides DATABASE_URL")

    # settle
    settle_parser = subparsers.add_parser("settle", help="Settle a week")
    settle_parser.add_argument("--week", help="Week deadline (YYYY-MM-DD or ISO timestamp)")
    settle_parser.add_argument("-v", "--verbose", action="store_true", help="Print per-commitment results")

    # reconcile
    reconcile_parser = subparsers.add_parser("reconcile", help="Process the reconciliation queue")
    reconcile_parser.add_argument("--limit", type=int, default=25)
    reconcile_parser.add_argument("--week", help="Only this week deadline")
    reconcile_parser.add_argument("--user", help="Only this user")
    reconcile_parser.add_argument("--dry-run", action="store_true")

    # close-week
    close_parser = subparsers.add_parser("close-week", help="Close a week's pool")
    close_parser.add_argument("--week", help="Week deadline (YYYY-MM-DD or ISO timestamp)")

    args = parser.parse_args()

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "init-db":
        cmd_init_db(args)
    elif args.command == "settle":
        cmd_settle(args)
    elif args.command == "reconcile":
        cmd_reconcile(args)
    elif args.command == "close-week":
        cmd_close_week(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
