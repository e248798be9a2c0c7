"""CLI interface for commanddeck."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
import tomllib
from collections.abc import Awaitable, Callable
from typing import TypeVar

from commanddeck.config import DEFAULT_CONFIG, load_config, load_config_or_default, validate_config
from commanddeck.locking import LockError
from commanddeck.models import Mission, MissionStatus
from commanddeck.registry import MissionBusyError
from commanddeck.report import STATUS_LABELS, format_failure_inventory, format_plan
from commanddeck.scheduler import MissionStateError
from commanddeck.service import CommandDeck
from commanddeck.store import MissionClosedError, MissionNotFound
from commanddeck.validate import ConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures an operator can act on; reported as a one-line error with exit code 1.
OPERATOR_ERRORS = (
	ConfigurationError,
	LockError,
	MissionBusyError,
	MissionClosedError,
	MissionNotFound,
	MissionStateError,
)

EXIT_CODES = {
	MissionStatus.REVIEW: 0,
	MissionStatus.COMPLETED: 0,
	MissionStatus.PENDING_APPROVAL: 0,
	MissionStatus.CHECKPOINT_PAUSED: 0,
	MissionStatus.PAUSED: 2,
	MissionStatus.FAILED: 1,
	MissionStatus.ABORTED: 1,
}


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="commanddeck",
		description="CommandDeck - parallel agent mission orchestration",
	)
	sub = parser.add_subparsers(dest="command")

	# commanddeck run
	run = sub.add_parser("run", help="Plan and run a mission against a repository")
	run.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	run.add_argument("repo", help="Repository name under the project directory")
	run.add_argument("prompt", help="What the mission should accomplish")
	run.add_argument(
		"--review-plan", action="store_true",
		help="Stop after planning and wait for approval via 'resume'",
	)

	# commanddeck resume
	resume = sub.add_parser("resume", help="Approve a plan or checkpoint, or recover an interrupted mission")
	resume.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	resume.add_argument("mission_id")

	# commanddeck status
	status = sub.add_parser("status", help="Show mission status")
	status.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	status.add_argument("mission_id", nargs="?", default=None, help="Mission ID (default: latest)")
	status.add_argument("--json", action="store_true", dest="json_output", help="JSON output")

	# commanddeck list
	lst = sub.add_parser("list", help="List missions")
	lst.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	lst.add_argument("--repo", default=None, help="Only missions for this repository")

	# commanddeck abort
	abort = sub.add_parser("abort", help="Abort a mission and stop its agents")
	abort.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	abort.add_argument("mission_id")

	# commanddeck retry
	retry = sub.add_parser("retry", help="Re-arm a failed or halted work item")
	retry.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	retry.add_argument("mission_id")
	retry.add_argument("item_id")

	# commanddeck extend
	extend = sub.add_parser("extend", help="Raise a mission's safety limits")
	extend.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	extend.add_argument("mission_id")
	extend.add_argument("--sessions", type=int, default=0, help="Additional agent sessions")
	extend.add_argument("--hours", type=float, default=0.0, help="Additional wall-clock hours")

	# commanddeck finalize
	fin = sub.add_parser("finalize", help="Close out a mission whose PR was merged or closed")
	fin.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	fin.add_argument("mission_id")

	# commanddeck patrol
	patrol = sub.add_parser("patrol", help="Run the health patrol over active missions")
	patrol.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	patrol.add_argument("--once", action="store_true", help="Patrol once and exit")

	# commanddeck cleanup
	cleanup = sub.add_parser("cleanup", help="Remove leftover worker worktrees of a repository")
	cleanup.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	cleanup.add_argument("repo")

	# commanddeck validate-config
	vc = sub.add_parser("validate-config", help="Validate config file semantically")
	vc.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")

	return parser


def _deck(args: argparse.Namespace) -> CommandDeck:
	return CommandDeck(load_config_or_default(args.config))


def _drive(deck: CommandDeck, op: Callable[[], Awaitable[T]]) -> T:
	"""Run one async operation, always shutting the deck down afterwards."""

	async def _main() -> T:
		try:
			return await op()
		finally:
			await deck.shutdown()

	return asyncio.run(_main())


def _report_outcome(mission: Mission) -> int:
	print(f"Mission: {mission.id}")
	print(f"Status: {STATUS_LABELS[mission.status]}" + (f" ({mission.status_message})" if mission.status_message else ""))
	if mission.status == MissionStatus.PENDING_APPROVAL:
		print(format_plan(mission))
		print(f"\nApprove with: commanddeck resume {mission.id}")
	elif mission.status == MissionStatus.CHECKPOINT_PAUSED:
		print(f"Approve with: commanddeck resume {mission.id}")
	elif mission.status == MissionStatus.FAILED:
		print(format_failure_inventory(mission))
	if mission.pr is not None and mission.pr.url:
		print(f"PR: {mission.pr.url}")
	return EXIT_CODES.get(mission.status, 0)


def cmd_run(args: argparse.Namespace) -> int:
	"""Create, plan and run a mission."""
	deck = _deck(args)
	mission = _drive(deck, lambda: deck.run(args.repo, args.prompt, review_plan=args.review_plan))
	return _report_outcome(mission)


def cmd_resume(args: argparse.Namespace) -> int:
	deck = _deck(args)
	mission = _drive(deck, lambda: deck.resume(args.mission_id))
	return _report_outcome(mission)


def cmd_status(args: argparse.Namespace) -> int:
	"""Show the status of one mission (default: the latest)."""
	deck = _deck(args)
	if args.json_output:
		mission = deck.locate(args.mission_id) if args.mission_id else deck.store.latest()
		if mission is None:
			print("No missions yet.")
			return 1
		print(json.dumps(mission.to_dict(), indent=2))
		return 0
	print(deck.status(args.mission_id))
	return 0


def cmd_list(args: argparse.Namespace) -> int:
	deck = _deck(args)
	missions = deck.store.list_missions(args.repo)
	if not missions:
		print("No missions yet.")
		return 0
	print(f"{'ID':<36} {'Repo':<20} {'Status':<18} {'Progress':<10} Task")
	print("-" * 110)
	for m in missions:
		done, total, _ = m.progress()
		print(f"{m.id:<36} {m.repo[:20]:<20} {m.status.value:<18} {f'{done}/{total}':<10} {m.description[:40]}")
	return 0


def cmd_abort(args: argparse.Namespace) -> int:
	deck = _deck(args)
	mission = _drive(deck, lambda: deck.abort(args.mission_id))
	print(f"Mission {mission.id} aborted.")
	return 0


def cmd_retry(args: argparse.Namespace) -> int:
	deck = _deck(args)
	mission = _drive(deck, lambda: deck.retry(args.mission_id, args.item_id))
	return _report_outcome(mission)


def cmd_extend(args: argparse.Namespace) -> int:
	if args.sessions <= 0 and args.hours <= 0:
		print("Error: give --sessions and/or --hours")
		return 1
	deck = _deck(args)
	mission = _drive(deck, lambda: deck.extend(args.mission_id, args.sessions, args.hours))
	return _report_outcome(mission)


def cmd_finalize(args: argparse.Namespace) -> int:
	deck = _deck(args)
	mission = _drive(deck, lambda: deck.finalize(args.mission_id))
	if mission.status == MissionStatus.REVIEW:
		print(f"PR for {mission.id} is still open.")
		return 0
	return _report_outcome(mission)


def cmd_patrol(args: argparse.Namespace) -> int:
	"""Run the health patrol once, or until interrupted."""
	deck = _deck(args)

	if args.once:
		reports = _drive(deck, deck.patrol_once)
		for report in reports:
			state = "healthy" if report.healthy else "ALERTS"
			print(f"{report.mission_id}: {len(report.workers)} worker(s), {state}")
			for alert in report.alerts:
				print(f"  [{alert.level}] {alert.message}")
		if not reports:
			print("No active missions.")
		return 0 if all(r.healthy for r in reports) else 1

	async def _forever() -> None:
		stop = asyncio.Event()
		loop = asyncio.get_running_loop()
		for sig in (signal.SIGINT, signal.SIGTERM):
			loop.add_signal_handler(sig, stop.set)
		await deck.patrol_forever(stop)

	_drive(deck, _forever)
	return 0


def cmd_cleanup(args: argparse.Namespace) -> int:
	deck = _deck(args)
	removed = _drive(deck, lambda: deck.cleanup(args.repo))
	for path in removed:
		print(f"Removed {path}")
	print(f"{len(removed)} worktree(s) removed.")
	return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
	"""Validate config file semantically."""
	try:
		config = load_config(args.config)
	except (FileNotFoundError, tomllib.TOMLDecodeError, ConfigurationError) as e:
		print(f"[ERROR] {e}")
		return 1
	issues = validate_config(config)

	errors = [(lvl, msg) for lvl, msg in issues if lvl == "error"]
	warnings = [(lvl, msg) for lvl, msg in issues if lvl == "warning"]

	for level, msg in issues:
		print(f"[{level.upper()}] {msg}")

	if not issues:
		print("Config OK")

	print(f"\n{len(errors)} error(s), {len(warnings)} warning(s)")
	return 1 if errors else 0


COMMANDS = {
	"run": cmd_run,
	"resume": cmd_resume,
	"status": cmd_status,
	"list": cmd_list,
	"abort": cmd_abort,
	"retry": cmd_retry,
	"extend": cmd_extend,
	"finalize": cmd_finalize,
	"patrol": cmd_patrol,
	"cleanup": cmd_cleanup,
	"validate-config": cmd_validate_config,
}


def main(argv: list[str] | None = None) -> int:
	logging.basicConfig(
		level=logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
		datefmt="%H:%M:%S",
		force=True,
	)
	parser = build_parser()
	args = parser.parse_args(argv)

	if args.command is None:
		parser.print_help()
		return 0

	handler = COMMANDS.get(args.command)
	if handler is None:
		print(f"Unknown command: {args.command}")
		return 1

	try:
		return handler(args)
	except OPERATOR_ERRORS as e:
		print(f"Error: {e}")
		return 1


if __name__ == "__main__":
	sys.exit(main())
