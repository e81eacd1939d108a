"""CLI entrypoint for the process engine.

Every command works against the JSON stores named by the settings, so state
survives between invocations. Exit codes: 0 ok, 1 unexpected failure,
2 configuration or usage error, 3 engine error.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from process_engine import __version__
from process_engine.engine.config import EngineSettings
from process_engine.engine.logging import configure_logging
from process_engine.engine.storage import load_definition_file
from process_engine.engine.workflow.engine import ProcessEngine
from process_engine.engine.workflow.errors import EngineError
from process_engine.engine.workflow.events import Trigger, TriggerKind
from process_engine.engine.workflow.models import validate_definition
from process_engine.engine.workflow.scheduler import AdvanceOutcome, ResolveAction

logger = logging.getLogger(__name__)


def _parse_pairs(values: list[str] | None) -> dict[str, Any]:
    """Turn ``key=value`` arguments into a dict; values are parsed as JSON when possible."""

    out: dict[str, Any] = {}
    for item in values or []:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Expected key=value, got {item!r}")
        try:
            out[key.strip()] = json.loads(raw)
        except json.JSONDecodeError:
            out[key.strip()] = raw
    return out


def _print_json(value: object) -> None:
    print(json.dumps(value, indent=2, ensure_ascii=False, default=str))


def _report(outcome: AdvanceOutcome) -> int:
    _print_json(outcome.to_json())
    return 0 if outcome.ok else 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="process-engine",
        description="Run and inspect workflow instances",
    )
    parser.add_argument("--version", action="version", version=f"process-engine {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Check a definition file for structural problems")
    validate.add_argument("path", type=Path, help="Definition JSON file")

    start = subparsers.add_parser("start", help="Start an instance and run it until it waits")
    start.add_argument("definition_id")
    start.add_argument("--var", action="append", default=None, help="Initial variable key=value")
    start.add_argument("--starter", default=None, help="Starter user id")
    start.add_argument("--entity", default=None, help="Entity id the instance acts on")
    start.add_argument(
        "--no-advance",
        action="store_true",
        help="Create and activate only; do not deliver the start trigger",
    )

    advance = subparsers.add_parser("advance", help="Deliver a trigger to an instance")
    advance.add_argument("instance_id")
    advance.add_argument(
        "--kind",
        choices=[k.value for k in TriggerKind],
        default=TriggerKind.USER_ACTION.value,
    )
    advance.add_argument("--branch", default="main", help="Branch id the trigger addresses")
    advance.add_argument("--data", action="append", default=None, help="Payload entry key=value")

    show = subparsers.add_parser("show", help="Print an instance")
    show.add_argument("instance_id")

    logs = subparsers.add_parser("logs", help="Print an instance's audit trail")
    logs.add_argument("instance_id")

    cancel = subparsers.add_parser("cancel", help="Cancel an instance")
    cancel.add_argument("instance_id")
    cancel.add_argument("--reason", default="", help="Recorded with the cancellation")

    resolve = subparsers.add_parser("resolve", help="Retry or abort an instance in error")
    resolve.add_argument("instance_id")
    resolve.add_argument("--action", choices=[a.value for a in ResolveAction], required=True)

    subparsers.add_parser("tick", help="Fire due timers and sweep join timeouts once")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    try:
        if args.command == "validate":
            definition = load_definition_file(args.path)
            problems = validate_definition(definition)
            if problems:
                for problem in problems:
                    print(f"{definition.id}: {problem}")
                return 3
            print(f"{definition.id}: ok")
            return 0

        engine = ProcessEngine.from_settings(settings)

        if args.command == "start":
            kwargs: dict[str, Any] = {
                "variables": _parse_pairs(args.var),
                "starter_id": args.starter,
                "entity_id": args.entity,
            }
            if args.no_advance:
                instance = engine.start(args.definition_id, **kwargs)
                _print_json({"instance_id": instance.id, "status": instance.status.value})
                return 0
            return _report(engine.trigger_start(args.definition_id, **kwargs))

        if args.command == "advance":
            engine.recover()
            trigger = Trigger(
                kind=TriggerKind(args.kind),
                payload=_parse_pairs(args.data),
                branch_id=args.branch,
            )
            return _report(engine.advance(args.instance_id, trigger))

        if args.command == "show":
            _print_json(engine.get_instance(args.instance_id).model_dump(mode="json"))
            return 0

        if args.command == "logs":
            for entry in engine.list_logs(args.instance_id):
                print(entry.model_dump_json())
            return 0

        if args.command == "cancel":
            instance = engine.cancel(args.instance_id, args.reason)
            _print_json({"instance_id": instance.id, "status": instance.status.value})
            return 0

        if args.command == "resolve":
            engine.recover()
            return _report(engine.resolve_error(args.instance_id, ResolveAction(args.action)))

        if args.command == "tick":
            recovered = engine.recover()
            fired = engine.tick()
            _print_json({"recovered": recovered, "fired": [e.instance_id for e in fired]})
            return 0

        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 2

    except EngineError as e:
        logger.error("Command failed", extra={"kind": e.kind.value, "detail": e.detail})
        print(f"{e.kind.value}: {e.detail}", file=sys.stderr)
        return 3
    except ValueError as e:
        print(f"Invalid argument: {e}", file=sys.stderr)
        return 2
    except Exception:
        logger.exception("Command failed")
        return 1
