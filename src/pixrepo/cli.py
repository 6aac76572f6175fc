"""
pixrepo CLI - Command-line interface for the pixrepo package.

Provides subcommands:
- pixrepo start: Start the HTTP gateway
- pixrepo reconcile: Recompute size totals and status of every store
- pixrepo deploy: Trigger every store's deploy hook
- pixrepo version: Display version information
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from pixrepo import init_logging
from pixrepo.config import get_settings
from pixrepo.deploy import DeployTriggerAggregator
from pixrepo.metadata import MetadataStore
from pixrepo.reconciler import Reconciler


def get_version() -> str:
    """Get the package version."""
    try:
        from importlib.metadata import version

        return version("pixrepo")
    except Exception:
        return "0.0.1"


def cmd_version(args):
    """Handle the 'version' subcommand."""
    print(f"pixrepo version {get_version()}")
    print(f"Python {sys.version}")


def _load_settings(args):
    settings = get_settings()
    if getattr(args, "database_url", None):
        settings.DATABASE_URL = args.database_url
    if getattr(args, "session_store", None):
        settings.SESSION_STORE = args.session_store
    if getattr(args, "session_dir", None):
        settings.SESSION_DIR = Path(args.session_dir)
    init_logging(level=settings.LOG_LEVEL, log_dir=settings.LOG_DIR)
    return settings


def _open_metadata(settings) -> MetadataStore:
    metadata = MetadataStore.from_url(settings.DATABASE_URL)
    metadata.create_all()
    return metadata


def cmd_start(args):
    """Handle the 'start' subcommand."""
    from pixrepo.server import GatewayServer

    settings = _load_settings(args)

    print("=" * 50)
    print(f"pixrepo v{get_version()}")
    print(f"HTTP Server:  http://{args.host}:{args.port}")
    print(f"Database:     {settings.DATABASE_URL}")
    if settings.SESSION_STORE == "s3":
        print(f"Sessions:     S3 (s3://{settings.SESSION_S3_BUCKET}/{settings.SESSION_S3_PREFIX})")
    elif settings.SESSION_STORE == "local":
        print(f"Sessions:     Local ({settings.SESSION_DIR})")
    else:
        print("Sessions:     Memory (single process only)")
    if settings.RECONCILE_INTERVAL_MINUTES > 0:
        print(f"Reconcile:    every {settings.RECONCILE_INTERVAL_MINUTES}m")
    print("=" * 50)

    GatewayServer(settings, host=args.host, port=args.port).run()


def cmd_reconcile(args):
    """Handle the 'reconcile' subcommand."""
    settings = _load_settings(args)
    reconciler = Reconciler(_open_metadata(settings))

    if args.store_id is not None:
        try:
            results = [reconciler.reconcile(args.store_id)]
        except LookupError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    else:
        results = reconciler.reconcile_all()

    print(json.dumps([r.to_dict() for r in results], indent=2))
    if not all(r.success for r in results):
        sys.exit(1)


def cmd_deploy(args):
    """Handle the 'deploy' subcommand."""
    settings = _load_settings(args)
    deployer = DeployTriggerAggregator(_open_metadata(settings), settings.DEPLOY_HOOK)
    result = asyncio.run(deployer.trigger_all())

    print(json.dumps(result.to_dict(), indent=2, default=str))
    if not result.overall_success:
        sys.exit(1)


def _add_database_argument(parser):
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="SQLAlchemy database URL (default: DATABASE_URL or sqlite:///./pixrepo.db)",
    )


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="pixrepo",
        description="pixrepo - image hosting gateway backed by GitHub repositories",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(
        title="commands",
        description="Available commands",
        dest="command",
        required=True,
    )

    # 'start' subcommand
    start_parser = subparsers.add_parser(
        "start",
        help="Start the HTTP gateway",
        description="Start the pixrepo upload gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  pixrepo start                                  # Start with defaults (memory sessions)
  pixrepo start --port 9000                      # Custom HTTP port
  pixrepo start --session-store=local --session-dir=/var/lib/pixrepo/sessions
  pixrepo start --session-store=s3               # Sessions in SESSION_S3_BUCKET
        """,
    )
    start_parser.add_argument(
        "--port", type=int, default=8788, help="HTTP server port (default: 8788)"
    )
    start_parser.add_argument(
        "--host", type=str, default="0.0.0.0", help="Host to bind to (default: 0.0.0.0)"
    )
    _add_database_argument(start_parser)
    start_parser.add_argument(
        "--session-store",
        type=str,
        default=None,
        choices=["memory", "local", "s3"],
        help="Where chunked upload sessions live (default: SESSION_STORE or memory)",
    )
    start_parser.add_argument(
        "--session-dir",
        type=str,
        default=None,
        help="Directory for --session-store=local",
    )
    start_parser.set_defaults(func=cmd_start)

    # 'reconcile' subcommand
    reconcile_parser = subparsers.add_parser(
        "reconcile",
        help="Recompute store totals from file records",
        description="Resync file counts, sizes and status of one or every store",
    )
    reconcile_parser.add_argument(
        "--store-id", type=int, default=None, help="Only reconcile this store"
    )
    _add_database_argument(reconcile_parser)
    reconcile_parser.set_defaults(func=cmd_reconcile)

    # 'deploy' subcommand
    deploy_parser = subparsers.add_parser(
        "deploy",
        help="Trigger deploy hooks",
        description="POST every store's deploy hook and report the results",
    )
    _add_database_argument(deploy_parser)
    deploy_parser.set_defaults(func=cmd_deploy)

    # 'version' subcommand
    version_parser = subparsers.add_parser(
        "version",
        help="Display version information",
        description="Display pixrepo version and Python version",
    )
    version_parser.set_defaults(func=cmd_version)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
