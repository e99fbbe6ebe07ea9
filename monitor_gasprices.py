"""CLI entrypoint for the gas prices refresh agent."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
from pathlib import Path

from gasprices.db import PriceStore, resolve_sqlite_path
from gasprices.fetcher import DEFAULT_FEED_URL, DEFAULT_TIMEOUT, FeedFetcher
from gasprices.notifications import build_notifier_from_env, notify_listener
from gasprices.runner import RefreshCycle, background_data_gate
from gasprices.scheduler import RefreshScheduler, next_refresh_time

logger = logging.getLogger(__name__)

FALSE_VALUES = {"0", "false", "no", "off"}
SELECTED_CITY = "selected"


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Gas prices refresh agent")
    parser.add_argument("--init", action="store_true", help="initialize storage and exit")
    parser.add_argument("--run", action="store_true", help="execute one refresh cycle")
    parser.add_argument(
        "--serve",
        action="store_true",
        help="keep running and refresh at 17:00, 20:00 and midnight",
    )
    parser.add_argument(
        "--feed-url",
        default=os.getenv("GASPRICES_FEED_URL", DEFAULT_FEED_URL),
        help="feed URL (overrides GASPRICES_FEED_URL env var)",
    )
    parser.add_argument("--export", type=Path, metavar="PATH", help="export cached cities to an xlsx file")
    parser.add_argument(
        "--set-widget",
        nargs=3,
        metavar=("WIDGET_ID", "CITY_ID", "NAME"),
        help="select the city shown by a widget",
    )
    parser.add_argument(
        "--clear-widget",
        nargs="+",
        type=int,
        metavar="WIDGET_ID",
        help="forget the city selection of removed widgets",
    )
    parser.add_argument("--select-city", type=int, metavar="CITY_ID", help="remember the city shown by default")
    parser.add_argument(
        "--show-city",
        nargs="?",
        type=int,
        const=SELECTED_CITY,
        metavar="CITY_ID",
        help="print a cached city record (the selected city when CITY_ID is omitted)",
    )
    parser.add_argument("--verbose", action="store_true", help="enable debug logging")
    return parser


def background_data_enabled() -> bool:
    value = (os.getenv("GASPRICES_BACKGROUND_DATA") or "").strip().lower()
    return value not in FALSE_VALUES


def fetch_timeout() -> float:
    value = (os.getenv("GASPRICES_TIMEOUT") or "").strip()
    if not value:
        return DEFAULT_TIMEOUT
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring invalid GASPRICES_TIMEOUT=%r", value)
        return DEFAULT_TIMEOUT


def serve(cycle: RefreshCycle, stop_event: threading.Event | None = None, poll_interval: float = 1.0) -> None:
    """Run the scheduler until interrupted, catching up on a missed window."""
    stop_event = stop_event or threading.Event()
    cycle.scheduler.start()
    try:
        metadata = cycle.store.get_metadata()
        now = cycle.clock()
        pending = metadata.next_refresh
        if pending is None and metadata.last_updated is not None:
            pending = next_refresh_time(metadata.last_updated)

        if pending is None or pending <= now:
            logger.info("No pending refresh window ahead; refreshing now")
            cycle.run()
        else:
            cycle.scheduler.schedule(pending, cycle.run)
        logger.info("Serving; pending refresh at %s", cycle.scheduler.pending_run_time())

        while not stop_event.wait(poll_interval):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")
    finally:
        cycle.scheduler.shutdown(wait=False)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    database_url = os.getenv("DATABASE_URL", "sqlite:///gasprices.db")
    store = PriceStore(path=resolve_sqlite_path(database_url))
    cycle = RefreshCycle(
        store=store,
        scheduler=RefreshScheduler(),
        fetcher=FeedFetcher(url=args.feed_url, timeout=fetch_timeout()),
        gate=background_data_gate(background_data_enabled()),
    )
    notifier = build_notifier_from_env()
    if notifier:
        cycle.add_listener(notify_listener(notifier))

    if args.init:
        cycle.init()
        return 0

    actions = (
        args.run,
        args.serve,
        args.export,
        args.set_widget,
        args.clear_widget,
        args.select_city is not None,
        args.show_city is not None,
    )
    if not any(actions):
        parser.print_help()
        return 1

    cycle.init()

    if args.set_widget:
        widget_id, city_id, name = args.set_widget
        try:
            store.set_widget_selection(int(widget_id), int(city_id), name)
        except ValueError:
            parser.error("--set-widget expects integer WIDGET_ID and CITY_ID")
        logger.info("Widget %s now shows %s (%s)", widget_id, name, city_id)

    if args.clear_widget:
        store.clear_widget_selection(*args.clear_widget)
        logger.info("Cleared selection for widget(s) %s", ", ".join(map(str, args.clear_widget)))

    if args.select_city is not None:
        store.set_selected_city_id(args.select_city)
        logger.info("Selected city %d", args.select_city)

    if args.run:
        result = cycle.run()
        if result is None:
            return 1
        logger.info("Next refresh at %s", result.next_refresh.isoformat())

    if args.show_city is not None:
        city_id = args.show_city
        if city_id == SELECTED_CITY:
            city_id = store.get_selected_city_id()
            if city_id is None:
                logger.error("No city selected; use --select-city first")
                return 1
        payload = store.get_city_record(city_id)
        if payload is None:
            logger.error("No cached record for city %d", city_id)
            return 1
        print(json.dumps(json.loads(payload), indent=2, ensure_ascii=False))

    if args.export:
        count = store.export_cities_to_xlsx(args.export)
        logger.info("Exported %d cities to %s", count, args.export)

    if args.serve:
        serve(cycle)

    return 0


if __name__ == "__main__":
    sys.exit(main())
