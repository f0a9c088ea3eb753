from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from collections.abc import Sequence
from dataclasses import asdict

from pydantic import ValidationError

from paysweep.config import Settings
from paysweep.domain.errors import (
    ConfigurationError,
    IllegalTransitionError,
    IntentNotFoundError,
    RateLimitedError,
)
from paysweep.domain.intent import IntentStatus
from paysweep.engine import Engine, build_engine
from paysweep.logging_utils import setup_logging
from paysweep.services.process_lock import SchedulerLockedError, single_scheduler_lock
from paysweep.services.reconciliation_scheduler import CycleSummary

logger = logging.getLogger(__name__)


def _print_json(payload: object) -> None:
    print(json.dumps(payload, sort_keys=True, default=str))


def _summary_payload(summary: CycleSummary) -> dict[str, object]:
    payload = asdict(summary)
    payload["successes"] = summary.successes
    payload["failures"] = summary.failures
    return payload


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="paysweep",
        description="Reconcile payment intents against the ledger and sweep funds to custody.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run reconciliation cycles")
    run_parser.add_argument("--loop", action="store_true", help="Run continuously with backoff")
    run_parser.add_argument("--once", action="store_true", help="Alias for a single cycle")
    run_parser.add_argument(
        "--max-cycles",
        type=int,
        default=None,
        help="Stop after this many cycles in --loop mode (default: infinite)",
    )

    create_parser = subparsers.add_parser("create-intent", help="Register a new payment intent")
    create_parser.add_argument("--amount", required=True, help="Expected amount in asset units")
    create_parser.add_argument("--memo", default=None)
    create_parser.add_argument("--order-id", default=None)
    create_parser.add_argument("--description", default=None)
    create_parser.add_argument("--callback-url", default=None)

    get_parser = subparsers.add_parser("get-intent", help="Show one intent")
    get_parser.add_argument("intent_id")
    get_parser.add_argument("--events", action="store_true", help="Include the journey log")

    list_parser = subparsers.add_parser("list-intents", help="List intents, oldest first")
    list_parser.add_argument("--status", choices=[status.value for status in IntentStatus], default=None)
    list_parser.add_argument("--limit", type=int, default=100)

    force_parser = subparsers.add_parser(
        "force-reconcile", help="Re-run matching and consolidation for one intent"
    )
    force_parser.add_argument("intent_id")

    subparsers.add_parser("trigger-cycle", help="Run one admin-triggered cycle now")

    override_parser = subparsers.add_parser(
        "override-failed", help="Return a failed intent to funds_received with a fresh attempt budget"
    )
    override_parser.add_argument("intent_id")
    override_parser.add_argument("--reason", required=True)

    subparsers.add_parser("list-unmatched", help="Show transfers no intent claimed")
    return parser


def _install_stop_handlers(engine: Engine) -> None:
    def _handle(signum: int, frame: object) -> None:
        del frame
        logger.info("shutdown_requested", extra={"extra": {"signal": signum}})
        engine.scheduler.stop()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)


def run_scheduler(engine: Engine, *, loop_enabled: bool, max_cycles: int | None) -> int:
    if max_cycles is not None and max_cycles < 1:
        print("max-cycles must be >= 1")
        return 2
    if not loop_enabled:
        summary = engine.scheduler.run_cycle()
        _print_json(_summary_payload(summary))
        return 0 if summary.failures == 0 or summary.successes > 0 else 1

    try:
        with single_scheduler_lock(db_path=engine.settings.state_db_path):
            _install_stop_handlers(engine)
            engine.scheduler.run_forever(
                max_cycles=max_cycles,
                on_cycle=lambda summary: _print_json(_summary_payload(summary)),
            )
    except SchedulerLockedError as exc:
        print(str(exc), file=sys.stderr)
        return 3
    return 0


def dispatch(args: argparse.Namespace, engine: Engine) -> int:
    if args.command == "run":
        return run_scheduler(
            engine, loop_enabled=args.loop and not args.once, max_cycles=args.max_cycles
        )

    if args.command == "create-intent":
        created = engine.intents.create_intent(
            args.amount,
            args.memo,
            order_id=args.order_id,
            description=args.description,
            callback_url=args.callback_url,
        )
        _print_json(
            {
                "intent_id": created.intent_id,
                "destination_address": created.destination_address,
                "expected_amount": str(created.expected_amount),
                "memo": created.memo,
            }
        )
        return 0

    if args.command == "get-intent":
        payload = engine.intents.get_intent(args.intent_id)
        if args.events:
            payload["events"] = engine.intents.intent_events(args.intent_id)
        _print_json(payload)
        return 0

    if args.command == "list-intents":
        status = IntentStatus(args.status) if args.status else None
        _print_json(engine.intents.list_intents(status=status, limit=args.limit))
        return 0

    if args.command == "force-reconcile":
        _print_json(_summary_payload(engine.scheduler.force_reconcile(args.intent_id)))
        return 0

    if args.command == "trigger-cycle":
        _print_json(_summary_payload(engine.scheduler.trigger_cycle_now()))
        return 0

    if args.command == "override-failed":
        _print_json(engine.intents.override_failed(args.intent_id, args.reason))
        return 0

    if args.command == "list-unmatched":
        _print_json([asdict(record) for record in engine.store.list_unmatched()])
        return 0

    return 2


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return 2
    setup_logging(settings.log_level)

    try:
        engine = build_engine(settings)
    except ConfigurationError as exc:
        logger.error("configuration_invalid", extra={"extra": {"error": str(exc)}})
        print(str(exc), file=sys.stderr)
        return 2

    try:
        return dispatch(args, engine)
    except IntentNotFoundError as exc:
        print(str(exc), file=sys.stderr)
        return 4
    except (IllegalTransitionError, RateLimitedError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        return 2
    finally:
        engine.close()


if __name__ == "__main__":
    raise SystemExit(main())
