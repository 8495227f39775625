"""Process entrypoint for the relay queue worker."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading

from config import settings

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


def run_worker(args: argparse.Namespace) -> int:
    """Start the worker pool and block until a termination signal arrives."""
    from processing import EventProcessor, WorkerPool
    from services.database import init_db

    if not args.skip_migrations:
        init_db()

    stop_event = threading.Event()
    pool = WorkerPool(
        EventProcessor(),
        size=args.workers,
        stop_event=stop_event,
    )

    if args.once:
        settled = pool.run_once(0)
        logger.info("Processed %d queue item(s)", settled)
        return 0

    def _handle_shutdown(signum: int, _frame: object) -> None:
        logger.info("Received signal %s; shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_shutdown)
    signal.signal(signal.SIGTERM, _handle_shutdown)

    pool.start()
    logger.info("relay worker started")
    try:
        while not stop_event.wait(1.0):
            pass
    finally:
        pool.stop(timeout=settings.executor.run_timeout_seconds)
    return 0


def show_backlog(args: argparse.Namespace) -> int:
    """Print dead-lettered queue items as JSON lines."""
    from action_queue import ActionQueue

    queue = ActionQueue()
    for item in queue.backlog(limit=args.limit):
        print(
            json.dumps(
                {
                    "id": item.id,
                    "event_type": item.event_type,
                    "attempts": item.attempts,
                    "last_error": item.last_error,
                    "completed_at": item.completed_at.isoformat() if item.completed_at else None,
                }
            )
        )
    print(json.dumps({"stats": queue.stats()}))
    return 0


def requeue_item(args: argparse.Namespace) -> int:
    """Return a dead-lettered item to pending."""
    from action_queue import ActionQueue, QueueError

    try:
        snapshot = ActionQueue().requeue(args.item_id)
    except QueueError as exc:
        logger.error("Requeue failed (%s): %s", exc.code, exc)
        return 1
    logger.info("Queue item %s is %s again", snapshot.id, snapshot.status)
    return 0


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Relay automation worker")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.set_defaults(handler=run_worker, workers=None, once=False, skip_migrations=False)
    subcommands = parser.add_subparsers(dest="command")

    run = subcommands.add_parser("run", help="Drain the action queue (default)")
    run.add_argument("--workers", type=int, default=None, help="Number of worker threads")
    run.add_argument("--once", action="store_true", help="Process a single batch and exit")
    run.add_argument(
        "--skip-migrations",
        action="store_true",
        help="Do not apply database migrations on startup",
    )
    run.set_defaults(handler=run_worker)

    backlog = subcommands.add_parser("backlog", help="List dead-lettered queue items")
    backlog.add_argument("--limit", type=int, default=50)
    backlog.set_defaults(handler=show_backlog)

    requeue = subcommands.add_parser("requeue", help="Retry a dead-lettered queue item")
    requeue.add_argument("item_id", type=int)
    requeue.set_defaults(handler=requeue_item)

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
