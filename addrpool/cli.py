"""
Operator command line for the address pool service.

Works directly against the database configured in the environment (.env),
so it can run maintenance while the API is down.
"""
import argparse
import dataclasses
import json
import logging
import sys
from typing import List, Optional

from .config import get_settings
from .database import build_engine, build_session_factory, create_tables
from .exceptions import PoolEngineError
from .main import configure_logging
from .services.container import build_services
from .services.pool_registry import PoolRegistryService

logger = logging.getLogger(__name__)


def _as_dict(report) -> dict:
    data = dataclasses.asdict(report)
    for name in ("anomalies_found", "anomalies_fixed"):
        if hasattr(report, name):
            data[name] = getattr(report, name)
    return data


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="addrpool",
        description="Subscriber address pool maintenance CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--database-url",
        help="Override DATABASE_URL from the environment",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser("init-db", help="Create the database tables")

    import_parser = subparsers.add_parser("import-cidr", help="Expand a CIDR block into a pool")
    import_parser.add_argument("pool_id", type=int, help="Target pool id")
    import_parser.add_argument("cidr", help="Block to import, e.g. 100.64.0.0/24")
    import_parser.add_argument(
        "--reserve-gateway",
        action="store_true",
        default=None,
        help="Reserve the first usable host for the router interface",
    )

    stats_parser = subparsers.add_parser("stats", help="Show pool utilization")
    stats_parser.add_argument("pool_id", type=int, nargs="?", help="Pool id (default: all pools)")
    stats_scope = stats_parser.add_mutually_exclusive_group()
    stats_scope.add_argument("--router", type=int, metavar="ROUTER_ID", help="Per-pool statistics of one router")
    stats_scope.add_argument("--global", dest="global_stats", action="store_true",
                             help="Totals over every active router")

    sync_parser = subparsers.add_parser("sync", help="Reconcile with router binding tables")
    sync_parser.add_argument("router_id", type=int, nargs="?", help="Router to reconcile")
    sync_parser.add_argument("--all", action="store_true", help="Reconcile every active router")

    subparsers.add_parser("verify", help="Run one consistency verification pass")

    release_parser = subparsers.add_parser("release", help="Release a session's address")
    release_parser.add_argument("session_id", help="Subscriber session identifier")

    move_parser = subparsers.add_parser("move", help="Move a session's address into another pool")
    move_parser.add_argument("session_id", help="Subscriber session identifier")
    move_parser.add_argument("pool_id", type=int, help="Target pool id")

    return parser


def run(args: argparse.Namespace) -> object:
    settings = get_settings()
    if args.database_url:
        settings = settings.model_copy(update={"database_url": args.database_url})

    engine = build_engine(settings.database_url)
    try:
        if args.command == "init-db":
            create_tables(engine)
            return {"status": "ok", "database": settings.database_url.split("@")[-1]}

        session_factory = build_session_factory(engine)
        services = build_services(settings, session_factory)
        try:
            if args.command == "import-cidr":
                with session_factory() as db:
                    result = services.importer.import_cidr(
                        db, args.pool_id, args.cidr, args.reserve_gateway
                    )
                return dataclasses.asdict(result)

            if args.command == "stats":
                with session_factory() as db:
                    if args.global_stats:
                        return PoolRegistryService.get_global_stats(db)
                    if args.router is not None:
                        return PoolRegistryService.get_router_stats(db, args.router)
                    if args.pool_id is not None:
                        return PoolRegistryService.get_pool_stats(db, args.pool_id)
                    return [
                        PoolRegistryService.get_pool_stats(db, pool.id)
                        for pool in PoolRegistryService.list_pools(db)
                    ]

            if args.command == "sync":
                if args.all:
                    return [_as_dict(report) for report in services.reconciler.sync_all()]
                return _as_dict(services.reconciler.sync_with_router(args.router_id))

            if args.command == "verify":
                return _as_dict(services.verifier.verify_assignments())

            if args.command == "release":
                record = services.assignments.release(args.session_id)
                return {
                    "session_id": args.session_id,
                    "released": record is not None,
                    "address": record.address if record is not None else None,
                }

            if args.command == "move":
                record = services.assignments.move_session(args.session_id, args.pool_id)
                return {"session_id": args.session_id, "pool_id": record.pool_id, "address": record.address}
        finally:
            services.close()
    finally:
        engine.dispose()

    raise ValueError(f"Unknown command {args.command!r}")


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1
    if args.command == "sync" and (args.all == (args.router_id is not None)):
        parser.error("sync needs either a router id or --all")

    configure_logging(get_settings().log_level)
    try:
        output = run(args)
    except PoolEngineError as e:
        logger.error("%s failed: %s", args.command, e.message)
        print(json.dumps({"error": type(e).__name__, "detail": e.message}), file=sys.stderr)
        return 1

    print(json.dumps(output, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
