"""CLI de jobs operativos.

Uso:
    python -m jobs sweep [--once] [--interval 300]
    python -m jobs backfill-last-seen
    python -m jobs cleanup [--days 7]
    python -m jobs listen
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from datetime import timedelta
from typing import List, Optional

from airq_ingest.context import AppContext
from airq_ingest.core.clock import utc_now
from airq_ingest.infrastructure.persistence import SqlDocumentStore, create_schema
from airq_ingest.mqtt import ListenerConfig
from airq_ingest.status import StatusSweeper, StatusThresholds, SweepResult
from common.config import get_settings
from common.db import get_engine

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 2

DEFAULT_RETENTION_DAYS = 7


def run_backfill(store: SqlDocumentStore, sweeper: StatusSweeper) -> tuple[int, SweepResult]:
    """Adelanta last_seen con la lectura más reciente almacenada y re-evalúa estados."""
    advanced = 0
    for sensor_id, latest in store.latest_observed_at_by_sensor().items():
        if store.advance_last_seen(sensor_id, latest):
            advanced += 1
            logger.info("[BACKFILL] last_seen advanced sensor=%s last_seen=%s", sensor_id, latest.isoformat())
    return advanced, sweeper.sweep()


def run_cleanup(store: SqlDocumentStore, days: int = DEFAULT_RETENTION_DAYS) -> int:
    cutoff = utc_now() - timedelta(days=days)
    deleted = store.delete_events_before(cutoff)
    logger.info("[CLEANUP] Deleted %d ingestion events older than %d days", deleted, days)
    return deleted


def _cmd_sweep(args: argparse.Namespace, store: SqlDocumentStore) -> int:
    sweeper = StatusSweeper(store, StatusThresholds.from_env())
    if args.once:
        result = sweeper.sweep()
        logger.info("[STATUS] Sweep done evaluated=%d changed=%d", result.evaluated, result.changed)
        return EXIT_OK

    stop = threading.Event()
    _install_signal_handlers(stop)
    while not stop.is_set():
        try:
            result = sweeper.sweep()
            logger.info("[STATUS] Sweep done evaluated=%d changed=%d", result.evaluated, result.changed)
        except Exception as e:
            logger.error("[STATUS] Sweep iteration failed: %s", e)
        stop.wait(args.interval)
    return EXIT_OK


def _cmd_backfill(args: argparse.Namespace, store: SqlDocumentStore) -> int:
    advanced, result = run_backfill(store, StatusSweeper(store, StatusThresholds.from_env()))
    logger.info("[BACKFILL] Done advanced=%d status_changes=%d", advanced, result.changed)
    return EXIT_OK


def _cmd_cleanup(args: argparse.Namespace, store: SqlDocumentStore) -> int:
    run_cleanup(store, args.days)
    return EXIT_OK


def _cmd_listen(args: argparse.Namespace, store: SqlDocumentStore) -> int:
    settings = get_settings()
    stop = threading.Event()
    fatal = threading.Event()

    def on_fatal(listener) -> None:
        fatal.set()
        stop.set()

    ctx = AppContext.build(
        engine=store.engine,
        webhook_secret=settings.webhook_secret,
        max_future_skew=timedelta(seconds=settings.max_future_skew_seconds),
        listener_config=ListenerConfig.from_env(),
        on_listener_fatal=on_fatal,
        create_tables=False,
    )
    _install_signal_handlers(stop)

    ctx.metrics_buffer.start()
    ctx.listener.start()
    try:
        stop.wait()
    finally:
        ctx.listener.shutdown()
        ctx.metrics_buffer.stop()

    if fatal.is_set():
        logger.critical("[MQTT] Listener exhausted reconnect attempts, exiting")
        return EXIT_FATAL
    return EXIT_OK


def _install_signal_handlers(stop: threading.Event) -> None:
    def handle(signum, frame) -> None:
        logger.info("Signal %d received, stopping", signum)
        stop.set()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="airq-ingest-jobs", description="Air quality ingest operational jobs")
    sub = p.add_subparsers(dest="command", required=True)

    sweep = sub.add_parser("sweep", help="re-evaluate sensor statuses")
    sweep.add_argument("--once", action="store_true", help="run a single sweep and exit")
    sweep.add_argument("--interval", type=float, default=300.0, help="seconds between sweeps")
    sweep.set_defaults(handler=_cmd_sweep)

    backfill = sub.add_parser("backfill-last-seen", help="advance last_seen from stored readings")
    backfill.set_defaults(handler=_cmd_backfill)

    cleanup = sub.add_parser("cleanup", help="delete old ingestion events")
    cleanup.add_argument("--days", type=int, default=DEFAULT_RETENTION_DAYS)
    cleanup.set_defaults(handler=_cmd_cleanup)

    listen = sub.add_parser("listen", help="run the broker listener standalone")
    listen.set_defaults(handler=_cmd_listen)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )

    args = build_parser().parse_args(argv)
    engine = get_engine(get_settings())
    create_schema(engine)
    return args.handler(args, SqlDocumentStore(engine))


if __name__ == "__main__":
    raise SystemExit(main())
