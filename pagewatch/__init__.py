"""PageWatch - uptime, soft-failure and performance-audit monitoring for web pages."""

import argparse
import json
import logging
import signal
import sys
from threading import Event

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Event | None = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )
    # Keep request-level chatter from the HTTP client out of verbose output.
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _load(args: argparse.Namespace):
    """Load configuration, open the database and sync configured resources.

    Exits with status 1 on configuration or database errors.
    """
    from .config import ConfigError, load_config
    from .database import DatabaseError, init_db, sync_resources

    try:
        config = load_config(args.config)
        logger.info("Configuration loaded from %s", args.config)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    try:
        db_conn = init_db(config.database.path)
        inserted = sync_resources(db_conn, config.resources)
        logger.info("Database initialized at %s", config.database.path)
    except DatabaseError as e:
        logger.error("Database error: %s", e)
        sys.exit(1)

    return config, db_conn, inserted


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, default=str))


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start the scheduler and API server."""
    global _shutdown_event

    _setup_logging(args.verbose)
    logger.info("PageWatch %s starting...", __version__)

    from .api import ApiError, ApiServer
    from .database import get_resource
    from .scheduler import Scheduler

    # 1. Load configuration and database
    config, db_conn, inserted = _load(args)
    logger.info("Monitoring %d resource(s)", sum(1 for r in config.resources if r.enabled))

    # 2. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 3. Start components
    scheduler = Scheduler(config, db_conn)
    api_server: ApiServer | None = None

    # Newly configured resources get their first audit queued right away.
    if config.audit.enabled and inserted:
        new_resources = [get_resource(db_conn, resource_id) for resource_id in inserted]
        scheduler.queue.enqueue_all(r for r in new_resources if r is not None and r.enabled)

    try:
        scheduler.start()

        if config.api.enabled:
            try:
                api_server = ApiServer(config.api, db_conn, scheduler)
                api_server.start()
            except ApiError as e:
                logger.error("Failed to start API server: %s", e)
                logger.warning("Continuing without API server")
                api_server = None

        logger.info("All components started, waiting for shutdown signal...")

        # 4. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        # 5. Cleanup - stop all components
        logger.info("Shutting down components...")

        scheduler.stop()

        if api_server is not None:
            api_server.stop()

        db_conn.close()
        logger.info("Database connection closed")

        logger.info("Shutdown complete")


def _cmd_tick(args: argparse.Namespace) -> None:
    """Execute the tick command - run one uptime tick and print its summary."""
    _setup_logging(args.verbose)
    from .scheduler import Scheduler

    config, db_conn, _ = _load(args)
    scheduler = Scheduler(config, db_conn)
    try:
        scheduler.tracker.load()
        _print_json(scheduler.uptime_tick())
    finally:
        db_conn.close()


def _cmd_audit_worker(args: argparse.Namespace) -> None:
    """Execute the audit-worker command - process one batch of due audit jobs."""
    _setup_logging(args.verbose)
    from .scheduler import Scheduler

    config, db_conn, _ = _load(args)
    scheduler = Scheduler(config, db_conn)
    try:
        if args.enqueue:
            from .database import list_enabled_resources

            scheduler.queue.enqueue_all(list_enabled_resources(db_conn))
        _print_json(scheduler.audit_tick())
    finally:
        db_conn.close()


def _cmd_probe(args: argparse.Namespace) -> None:
    """Execute the probe command - check one resource now."""
    _setup_logging(args.verbose)
    from .api import _check_to_dict
    from .scheduler import Scheduler

    config, db_conn, _ = _load(args)
    scheduler = Scheduler(config, db_conn)
    try:
        scheduler.tracker.load()
        result = scheduler.probe_now(args.resource_id)
        if result is None:
            print(f"Error: Resource '{args.resource_id}' not found")
            sys.exit(1)
        _print_json(_check_to_dict(result))
    finally:
        db_conn.close()


def _cmd_audit(args: argparse.Namespace) -> None:
    """Execute the audit command - run a manual audit of one resource now."""
    _setup_logging(args.verbose)
    from .api import _audit_to_dict
    from .scheduler import Scheduler

    config, db_conn, _ = _load(args)
    scheduler = Scheduler(config, db_conn)
    try:
        record = scheduler.trigger_manual_audit(args.resource_id)
        if record is None:
            print(f"Error: Resource '{args.resource_id}' not found")
            sys.exit(1)
        _print_json(_audit_to_dict(record))
        if not record.success:
            sys.exit(1)
    finally:
        db_conn.close()


def _cmd_rank(args: argparse.Namespace) -> None:
    """Execute the rank command - print the health ranking."""
    _setup_logging(args.verbose)
    from .api import _build_ranking_response
    from .database import DatabaseError
    from .scoring import rank_resources

    _, db_conn, _ = _load(args)
    try:
        ranking = rank_resources(db_conn, days=args.days, group=args.group)
    except (DatabaseError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db_conn.close()

    if args.json:
        _print_json(_build_ranking_response(ranking))
        return

    print(f"Health ranking, last {ranking.period_days} day(s)\n")
    for position, entry in enumerate(ranking.entries, start=1):
        variation = entry.variation or "-"
        print(
            f"{position:>3}. {entry.health_score:>3}  {variation:<6} {entry.name} [{entry.group}] "
            f"uptime={entry.current.uptime}% avg={entry.current.avg_response_time_ms}ms "
            f"incidents={entry.current.incident_count} perf={entry.performance if entry.performance is not None else '-'}"
        )


def _cmd_clean(args: argparse.Namespace) -> None:
    """Execute the clean command - remove old check and audit records."""
    from .config import ConfigError, load_config
    from .database import DatabaseError, cleanup_old_audits, cleanup_old_checks, init_db

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.retention_days is not None:
        if args.retention_days < 1:
            print("Error: retention-days must be a positive integer")
            sys.exit(1)
        retention_days = args.retention_days
    else:
        retention_days = config.database.retention_days

    try:
        conn = init_db(config.database.path)
        checks = cleanup_old_checks(conn, retention_days)
        audits = cleanup_old_audits(conn, retention_days)
        conn.close()
    except DatabaseError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Deleted {checks} check records and {audits} audit records older than {retention_days} days.")


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )


def main() -> None:
    """Main entry point for the pagewatch package."""
    parser = argparse.ArgumentParser(
        description="PageWatch - uptime, soft-failure and performance-audit monitoring"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"pagewatch {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Start the scheduler and API server (default)")
    _add_common_arguments(run_parser)
    run_parser.set_defaults(func=_cmd_run)

    tick_parser = subparsers.add_parser("tick", help="Run one uptime check of all enabled resources")
    _add_common_arguments(tick_parser)
    tick_parser.set_defaults(func=_cmd_tick)

    worker_parser = subparsers.add_parser("audit-worker", help="Process one batch of due audit jobs")
    _add_common_arguments(worker_parser)
    worker_parser.add_argument(
        "--enqueue",
        action="store_true",
        help="Queue an audit for every enabled resource first",
    )
    worker_parser.set_defaults(func=_cmd_audit_worker)

    probe_parser = subparsers.add_parser("probe", help="Check one resource now")
    _add_common_arguments(probe_parser)
    probe_parser.add_argument("resource_id", help="Id of the resource to check")
    probe_parser.set_defaults(func=_cmd_probe)

    audit_parser = subparsers.add_parser("audit", help="Run a performance audit of one resource now")
    _add_common_arguments(audit_parser)
    audit_parser.add_argument("resource_id", help="Id of the resource to audit")
    audit_parser.set_defaults(func=_cmd_audit)

    rank_parser = subparsers.add_parser("rank", help="Print the health ranking")
    _add_common_arguments(rank_parser)
    rank_parser.add_argument("--days", type=int, default=7, help="Window length in days (default: 7)")
    rank_parser.add_argument("--group", help="Only rank resources of this group")
    rank_parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    rank_parser.set_defaults(func=_cmd_rank)

    clean_parser = subparsers.add_parser("clean", help="Remove old check and audit records")
    clean_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    clean_parser.add_argument(
        "--retention-days",
        type=int,
        help="Delete records older than this many days (overrides config)",
    )
    clean_parser.set_defaults(func=_cmd_clean)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
