from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import threading
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .client import NelloClient
from .config import load_config
from .models import ParsedEvent, RecurrenceRule, ScheduleDescription, Token, WebhookUri
from .result import Result

CONFIG_PATH_DEFAULT = "config.yaml"

logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (ParsedEvent, RecurrenceRule, Token, WebhookUri)):
        return dataclasses.asdict(value)
    return str(value)


def _print_result(result: Result) -> int:
    print(json.dumps(result.to_dict(), indent=2, default=_jsonable))
    return 0 if result.ok else 1


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _ensure_token(client: NelloClient) -> Result:
    token = client.get_token()
    if token is not None:
        return Result.success(token)
    return client.set_token()


def _wait_for_interrupt() -> None:
    threading.Event().wait()


def _listen_forever(client: NelloClient, args: argparse.Namespace) -> int:
    def on_event(result: Result) -> None:
        _print_result(result)

    subscribed = client.listen(args.location, args.uri, on_event, actions=args.actions or None)
    _print_result(subscribed)
    if not subscribed.ok:
        return 1

    try:
        _wait_for_interrupt()
    except KeyboardInterrupt:
        logger.info("Stopping webhook listener")
    finally:
        client.unlisten(args.location)
    return 0


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Command line client for the nello.io smart-lock API")
    ap.add_argument("--config", default=CONFIG_PATH_DEFAULT)
    ap.add_argument("--verbose", action="store_true")
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("token")
    sub.add_parser("locations")

    open_cmd = sub.add_parser("open")
    open_cmd.add_argument("--location", required=True)

    tws = sub.add_parser("time-windows")
    tws.add_argument("--location", required=True)

    create = sub.add_parser("create-time-window")
    create.add_argument("--location", required=True)
    create.add_argument("--name", required=True)
    create.add_argument("--start")
    create.add_argument("--end")
    create.add_argument("--freq")
    create.add_argument("--until")
    create.add_argument("--ical-file", help="send this calendar file instead of building one")

    delete = sub.add_parser("delete-time-window")
    delete.add_argument("--location", required=True)
    delete.add_argument("--id", required=True)

    delete_all = sub.add_parser("delete-all-time-windows")
    delete_all.add_argument("--location", required=True)

    listen = sub.add_parser("listen")
    listen.add_argument("--location", required=True)
    listen.add_argument("--uri", required=True, help="external host:port the API should push to")
    listen.add_argument("--actions", nargs="*", choices=["swipe", "geo", "tw", "deny"])

    unlisten = sub.add_parser("unlisten")
    unlisten.add_argument("--location", required=True)

    args = ap.parse_args(argv)
    _setup_logging(args.verbose)
    load_dotenv()

    client = NelloClient(load_config(args.config))
    with client:
        token = _ensure_token(client)
        if args.command == "token" or not token.ok:
            return _print_result(token)

        if args.command == "locations":
            return _print_result(client.get_locations())

        if args.command == "open":
            return _print_result(client.open_door(args.location))

        if args.command == "time-windows":
            return _print_result(client.get_time_windows(args.location))

        if args.command == "create-time-window":
            if args.ical_file:
                ical: Any = Path(args.ical_file).read_text(encoding="utf-8")
            else:
                recurrence = RecurrenceRule(frequency=args.freq, until=args.until) if args.freq else None
                ical = ScheduleDescription(start=args.start, end=args.end, recurrence=recurrence)
            return _print_result(client.create_time_window(args.location, args.name, ical))

        if args.command == "delete-time-window":
            return _print_result(client.delete_time_window(args.location, args.id))

        if args.command == "delete-all-time-windows":
            results = client.delete_all_time_windows(args.location, callback=_print_result)
            return 0 if all(r.ok for r in results) else 1

        if args.command == "listen":
            return _listen_forever(client, args)

        if args.command == "unlisten":
            return _print_result(client.unlisten(args.location))

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
