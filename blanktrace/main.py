"""
Main entry point for BlankTrace.

Commands:
  run                      start the proxy (default)
  whitelist DOMAIN         exempt a domain from blocking
  block DOMAIN             manually block a tracked domain
  top [--limit N]          show the most-hit tracking domains
  cleanup [--days N]       purge old event-log rows now
"""

import argparse
import asyncio
import sys

from blanktrace import __version__
from blanktrace.storage.database import Database, open_database
from blanktrace.utils.config import Settings, load_settings
from blanktrace.utils.errors import BlankTraceError, ConfigurationError
from blanktrace.utils.logging import configure_logging, get_logger


async def run_server(settings: Settings, db: Database) -> None:
    """Start background tasks and serve the proxy until shutdown."""
    from blanktrace.proxy.orchestrator import build_orchestrator
    from blanktrace.proxy.server import run_proxy

    orchestrator = build_orchestrator(settings, db)
    await orchestrator.start()
    try:
        await run_proxy(orchestrator, host=settings.host, port=settings.port)
    finally:
        await orchestrator.stop()


async def run_command(args: argparse.Namespace, settings: Settings) -> int:
    logger = get_logger(__name__)
    db = await open_database(settings.db_path)

    try:
        if args.command == "run":
            logger.info(
                "BlankTrace starting",
                version=__version__,
                port=settings.port,
                db_path=settings.db_path,
            )
            await run_server(settings, db)

        elif args.command == "whitelist":
            await db.add_whitelist(args.domain, args.reason)
            print(f"Whitelisted {args.domain}")

        elif args.command == "block":
            if await db.manual_block(args.domain):
                print(f"Blocked {args.domain}")
            else:
                print(f"{args.domain} is not a tracked domain", file=sys.stderr)
                return 1

        elif args.command == "top":
            rows = await db.top_domains(args.limit)
            if not rows:
                print("No tracking domains recorded.")
            for domain, hits in rows:
                print(f"{hits:>8}  {domain}")

        elif args.command == "cleanup":
            days = args.days if args.days is not None else settings.cleanup.retention_days
            deleted = await db.cleanup(days)
            print(f"Deleted {deleted} records older than {days} days")

    finally:
        await db.close()

    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="blanktrace",
        description="BlankTrace - privacy-enforcing intercepting proxy",
    )
    parser.add_argument("--config", "-c", help="Path to config.yaml")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Start the proxy")

    whitelist = sub.add_parser("whitelist", help="Whitelist a domain")
    whitelist.add_argument("domain")
    whitelist.add_argument("--reason", "-r")

    block = sub.add_parser("block", help="Manually block a tracked domain")
    block.add_argument("domain")

    top = sub.add_parser("top", help="Show top tracking domains")
    top.add_argument("--limit", "-n", type=int, default=10)

    cleanup = sub.add_parser("cleanup", help="Purge old event-log rows")
    cleanup.add_argument("--days", type=int)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    if args.command is None:
        args.command = "run"

    try:
        settings = load_settings(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        for err in e.details.get("errors", []):
            print(f"  {err['loc']}: {err['msg']}", file=sys.stderr)
        return 2

    configure_logging(
        log_level=settings.general.log_level,
        log_file=settings.general.log_file,
        json_format=settings.general.json_logs,
    )

    try:
        return asyncio.run(run_command(args, settings))
    except BlankTraceError as e:
        get_logger(__name__).error("BlankTrace failed", **e.to_dict())
        return 1
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
