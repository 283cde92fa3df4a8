#!/usr/bin/env python3
"""
keyswap CLI - integer keys to UUIDv7, online.

    keyswap plan plan.yaml
    keyswap run plan.yaml --db app.db [--attach tenant=tenant.db]
    keyswap verify plan.yaml --db app.db

`run` and `verify` print JSON on stdout; logs go to stderr.
"""

import argparse
import json
import logging
import signal
import sqlite3
import sys

import yaml

from keyswap import config
from keyswap.backfill import CancellationToken
from keyswap.db import get_db_path, open_engine
from keyswap.errors import KeyswapError
from keyswap.observability import RunContext, configure_logging
from keyswap.orchestrator import run
from keyswap.plan import MigrationPlan, load_plan
from keyswap.verifier import ConsistencyVerifier

logger = logging.getLogger("keyswap.cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_MANUAL_INTERVENTION = 2


def print_header(text: str):
    """Print a section header."""
    print(f"\n{'═' * 50}")
    print(f"  {text}")
    print(f"{'═' * 50}")


def parse_attach(values: list[str] | None) -> dict[str, str]:
    """NAME=PATH pairs from repeated --attach options."""
    attached = {}
    for value in values or []:
        name, sep, path = value.partition("=")
        if not sep or not name or not path:
            raise ValueError(f"--attach expects NAME=PATH, got {value!r}")
        attached[name] = path
    return attached


def cmd_plan(args) -> int:
    """Show the resolved table order and shadow columns."""
    plan = load_plan(args.plan)

    print_header(f"PLAN {plan.name}")
    print(f"  batch size:     {plan.batch_size}")
    print(f"  swap boundary:  {plan.swap_boundary}")
    print(f"  sync triggers:  {'on' if plan.sync_triggers else 'off'}")
    print(f"  checkpoints:    {'durable' if plan.durable_checkpoints else 'in memory'}")

    for position, table in enumerate(plan.ordered_tables(), 1):
        print(f"\n  {position}. {table.key}  (batch key: {table.batch_key})")
        if table.identity:
            seed = table.identity.timestamp_column or "now"
            print(
                f"     identity   {table.identity.column} -> {table.identity.shadow_column} "
                f"{table.identity.shadow_type} (seed: {seed})"
            )
        for ref in table.references:
            print(f"     reference  {ref.column} -> {ref.shadow_column}  => {ref.referenced_key}")
    return EXIT_OK


def _engine_args(args):
    return get_db_path(args.db), parse_attach(args.attach)


def cmd_run(args) -> int:
    """Run the migration and print the report."""
    plan = load_plan(args.plan)
    db_path, attach = _engine_args(args)
    cancel = CancellationToken()

    def handle_signal(signum, frame):
        sig_name = signal.Signals(signum).name
        logger.warning("Received %s, cancelling at the next safe point", sig_name)
        cancel.cancel(f"received {sig_name}")

    previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGTERM, signal.SIGINT)}
    try:
        with open_engine(db_path, attach=attach) as engine:
            report = run(
                plan,
                engine,
                cancel=cancel,
                batch_size=args.batch_size,
                max_batches_per_minute=args.max_batches_per_minute,
            )
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    print(json.dumps(report.to_dict(), indent=2, default=str))
    if report.success:
        return EXIT_OK
    if report.requires_manual_intervention:
        return EXIT_MANUAL_INTERVENTION
    return EXIT_FAILED


def cmd_verify(args) -> int:
    """Run the pre-swap checks read-only."""
    plan: MigrationPlan = load_plan(args.plan)
    db_path, attach = _engine_args(args)

    with open_engine(db_path, attach=attach) as engine, RunContext():
        results = ConsistencyVerifier(engine, plan).verify_plan()

    failures = [r for r in results if not r.ok]
    print(
        json.dumps(
            {
                "plan": plan.name,
                "ok": not failures,
                "checks": [r.to_dict() for r in results],
            },
            indent=2,
        )
    )
    return EXIT_OK if not failures else EXIT_FAILED


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="keyswap", description="Migrate integer identity columns to UUIDv7 keys."
    )
    p.add_argument("--log-level", default=config.LOG_LEVEL)
    p.add_argument(
        "--log-json",
        action=argparse.BooleanOptionalAction,
        default=config.LOG_JSON,
        help="JSON logs (default: when stderr is not a terminal)",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    pl = sub.add_parser("plan", help="Show table order and shadow columns")
    pl.add_argument("plan")
    pl.set_defaults(func=cmd_plan)

    r = sub.add_parser("run", help="Run the migration")
    r.add_argument("plan")
    r.add_argument("--db", default=None, help="Database path (default: $KEYSWAP_DB)")
    r.add_argument("--attach", action="append", metavar="NAME=PATH")
    r.add_argument("--batch-size", type=int, default=None)
    r.add_argument(
        "--max-batches-per-minute", type=int, default=config.MAX_BATCHES_PER_MINUTE
    )
    r.set_defaults(func=cmd_run)

    v = sub.add_parser("verify", help="Run consistency checks without changing anything")
    v.add_argument("plan")
    v.add_argument("--db", default=None, help="Database path (default: $KEYSWAP_DB)")
    v.add_argument("--attach", action="append", metavar="NAME=PATH")
    v.set_defaults(func=cmd_verify)

    return p


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level, json_format=args.log_json)

    try:
        return args.func(args)
    except (KeyswapError, FileNotFoundError, yaml.YAMLError, sqlite3.Error, ValueError) as e:
        logger.error("%s", e)
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
