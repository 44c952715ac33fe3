"""Command-line interface for the fulfillment service."""

import argparse
import signal
import sys
import threading
from pathlib import Path

from . import __version__
from .config import get_settings
from .database import Base, SessionLocal, engine
from .errors import FulfillmentError
from .services import build_services
from .utils.logging import configure_logging


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create all tables."""
    Base.metadata.create_all(bind=engine)
    print(f"Created tables on {engine.url.render_as_string(hide_password=True)}")
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    """Queue one import per order in a CSV file."""
    path = Path(args.path)
    if not path.is_file():
        print(f"Error: file not readable: {path}", file=sys.stderr)
        return 1

    settings = get_settings()
    Base.metadata.create_all(bind=engine)
    services = build_services(settings, SessionLocal)
    try:
        batch, count = services.importer.dispatch_file(path.read_text(encoding="utf-8"), args.batch)
    except FulfillmentError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Dispatched import jobs for {count} orders (batch {batch}).")

    if settings.task_backend == "local":
        # Nobody else is listening on an in-process queue; run the workflow here.
        processed = services.bus.drain(services.runner)
        print(f"Processed {processed} tasks.")
    return 0


def cmd_worker(args: argparse.Namespace) -> int:
    """Run workers until interrupted."""
    settings = get_settings()
    Base.metadata.create_all(bind=engine)
    services = build_services(settings, SessionLocal)
    concurrency = args.concurrency or settings.worker_concurrency

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    if settings.task_backend == "rabbitmq":
        from .consumers import start_consumer_thread

        for _ in range(concurrency):
            start_consumer_thread(services.runner, settings)
        print(f"Consuming with {concurrency} workers. Press Ctrl+C to stop.")
        try:
            stop.wait()
        except KeyboardInterrupt:
            pass
        return 0

    from .messaging.local import LocalWorkerPool

    pool = LocalWorkerPool(services.bus, services.runner, concurrency)
    pool.start()
    print(f"Running {concurrency} local workers. Press Ctrl+C to stop.")
    try:
        stop.wait()
    except KeyboardInterrupt:
        pass
    finally:
        pool.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fulfillment",
        description="Order fulfillment: import orders and run the workflow workers.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_init = subparsers.add_parser("init-db", help="Create database tables")
    p_init.set_defaults(func=cmd_init_db)

    p_import = subparsers.add_parser("import", help="Import orders from a CSV file")
    p_import.add_argument("path", help="Path to the CSV file")
    p_import.add_argument("--batch", default=None, help="Import batch id (default: new uuid)")
    p_import.set_defaults(func=cmd_import)

    p_worker = subparsers.add_parser("worker", help="Run task workers")
    p_worker.add_argument("--concurrency", type=int, default=None, help="Number of worker threads")
    p_worker.set_defaults(func=cmd_worker)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()
    configure_logging(settings.environment, settings.log_level)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
