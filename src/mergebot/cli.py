from __future__ import annotations

import argparse
import json
from pathlib import Path

from mergebot.config import BotConfig, load_config
from mergebot.observability import configure_logging
from mergebot.plastic_api import PlasticRestApi
from mergebot.process_lock import bot_process_lock
from mergebot.service_runner import ServiceRunner
from mergebot.state import StateStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mergebot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Create the base dir and state DB")
    _add_common_arguments(init_parser)

    run_parser = subparsers.add_parser(
        "run", help="Listen for server events and merge resolved branches"
    )
    _add_common_arguments(run_parser)

    queue_parser = subparsers.add_parser("queue", help="Inspect the pending branch queue")
    _add_common_arguments(queue_parser)
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", required=True)
    list_parser = queue_subparsers.add_parser("list", help="List queued branches in order")
    list_parser.add_argument(
        "--json",
        action="store_true",
        help="Print queued branches as JSON",
    )

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("mergebot.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=None,
        choices=("low", "high"),
        help="Enable runtime logging to stderr (low: lifecycle events, high: everything)",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    state_dir = config.runtime.base_dir if args.command == "run" else None
    configure_logging(args.verbose, state_dir=state_dir)

    if args.command == "init":
        _cmd_init(config)
        return
    if args.command == "run":
        _cmd_run(config)
        return
    if args.command == "queue":
        _cmd_queue(config, args)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_init(config: BotConfig) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    state = StateStore(config.state_db_path)
    print(f"Initialized mergebot base dir: {config.runtime.base_dir}")
    print(f"State DB: {state.db_path}")


def _cmd_run(config: BotConfig) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    with bot_process_lock(base_dir=config.runtime.base_dir, bot_name=config.runtime.bot_name):
        state = StateStore(config.state_db_path)
        api = PlasticRestApi(config.runtime.rest_api_url, config.bot_user_api_key)
        try:
            ServiceRunner(config=config, api=api, state=state).run()
        finally:
            api.close()


def _cmd_queue(config: BotConfig, args: argparse.Namespace) -> None:
    if args.queue_command == "list":
        _cmd_queue_list(StateStore(config.state_db_path), as_json=bool(args.json))
        return
    raise RuntimeError(f"Unknown queue command: {args.queue_command}")


def _cmd_queue_list(state: StateStore, *, as_json: bool) -> None:
    queued = state.list_queued_branches()
    if as_json:
        payload = [
            {
                "repository": item.branch.repository,
                "branch_id": item.branch.branch_id,
                "branch": item.branch.full_name,
                "owner": item.branch.owner,
                "enqueued_at": item.enqueued_at,
            }
            for item in queued
        ]
        print(json.dumps(payload, indent=2))
        return

    if not queued:
        print("No queued branches.")
        return

    for position, item in enumerate(queued, start=1):
        print(
            f"{position}. repo={item.branch.repository} branch_id={item.branch.branch_id} "
            f"owner={item.branch.owner or '<none>'} enqueued_at={item.enqueued_at}"
        )
        print(f"   branch={item.branch.full_name}")
