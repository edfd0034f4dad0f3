"""Entry point for `python -m fxflow` and the `fxflow` CLI script."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from fxflow.ledger import read_events
from fxflow.settings import EngineSettings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect fxflow event ledgers")
    parser.add_argument(
        "--log-level",
        default=None,
        type=lambda value: value.upper(),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity (default: FX_LOG_LEVEL, else INFO)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    inspect_parser = subparsers.add_parser("inspect", help="Summarize a JSON Lines ledger file")
    inspect_parser.add_argument("ledger", type=Path, help="Path to a ledger written by JsonlFileSink")
    inspect_parser.add_argument("--limit", type=int, default=10, help="Number of most recent events to list")
    return parser.parse_args(argv)


def inspect_ledger(path: Path, *, limit: int) -> int:
    try:
        events = read_events(path)
    except (OSError, ValueError) as exc:
        logging.error("Unable to read ledger: %s", exc)
        return 1

    counts: dict[str, int] = {}
    for event in events:
        counts[event.name] = counts.get(event.name, 0) + 1

    print(f"events={len(events)}")
    print("counts:")
    for name in sorted(counts):
        print(f"  {name}: {counts[name]}")

    recent = events[-limit:] if limit > 0 else []
    if recent:
        print("recent:")
    for event in recent:
        marker = "*" if event.changed else "="
        print(f"  {event.timestamp.isoformat()} {marker} {event.name} {event.before_hash[:12]} -> {event.after_hash[:12]}")
    return 0


def resolve_log_level(cli_level: str | None) -> int:
    """Return the level from ``--log-level``, falling back to ``FX_LOG_LEVEL``.

    Raises:
        ValueError: If the environment configuration is invalid.
    """
    if cli_level is not None:
        return getattr(logging, cli_level)
    return EngineSettings.from_env().log_level_number


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        level = resolve_log_level(args.log_level)
    except ValueError as exc:
        logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
        logging.error("Invalid configuration: %s", exc)
        return 1
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "inspect":
        return inspect_ledger(args.ledger, limit=args.limit)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
