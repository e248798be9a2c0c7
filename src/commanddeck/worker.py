"""Agent subprocesses: workers, reviewers and the conflict resolver.

Every agent is a ``claude -p`` subprocess with a restricted environment.
Running processes are tracked per (mission, objective) so an operator can
kill them; stderr is persisted under the mission's artifacts directory.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from commanddeck.collaborators import ConflictResolver, Reviewer, Worker, WorkerResult
from commanddeck.config import CommandDeckConfig, claude_subprocess_env
from commanddeck.jsonutil import extract_json
from commanddeck.models import Mission, Role, SessionLogEntry, WorkItem, _now_iso
from commanddeck.observability import log_event
from commanddeck.review import ReviewContext, build_review_prompt

if TYPE_CHECKING:
	from commanddeck.health import HealthTracker
	from commanddeck.store import MissionStore

logger = logging.getLogger(__name__)

_AUTH_FAILURE_PATTERNS = [
	re.compile(p, re.IGNORECASE) for p in (
		r"unauthorized",
		r"authentication required",
		r"not authenticated",
		r"api key",
		r"invalid.*token",
		r"expired.*token",
		r"token.*expired",
		r"login required",
	)
]
_AUTH_URL_PATTERNS = [
	re.compile(r"(https://\S*oauth\S*)", re.IGNORECASE),
	re.compile(r"(https://console\.anthropic\.com\S*)", re.IGNORECASE),
	re.compile(r"(https://\S*login\S*)", re.IGNORECASE),
]
TEST_FAILURE_RE = re.compile(r"^\s*(?:FAILED|FAIL)\s+(\S+)")
STREAM_LIMIT = 4 * 1024 * 1024


def is_auth_failure(stderr: str) -> bool:
	return bool(stderr) and any(p.search(stderr) for p in _AUTH_FAILURE_PATTERNS)


def detect_auth_url(stderr: str) -> str:
	for pattern in _AUTH_URL_PATTERNS:
		match = pattern.search(stderr or "")
		if match:
			return match.group(1)
	return ""


def build_worker_prompt(item: WorkItem, mission: Mission, mission_dir: Path) -> str:
	lines = [
		f"You are the {item.role.value}, executing objective {item.id}: {item.title}",
		"",
		f"Description: {item.description}",
		"",
		f"Mission: {mission.description}",
		f"Mission state directory: {mission_dir}",
		f"Read {mission_dir / 'mission.json'} for full mission context (read-only).",
	]
	if item.context_sources:
		lines += ["", "Read these before starting:"] + [f"  - {s}" for s in item.context_sources]
	if item.files_hint:
		lines += ["", "Expected file scope:"] + [f"  - {s}" for s in item.files_hint]
	if mission.project_commands:
		lines += ["", "Project commands:"] + [f"  - {k}: {v}" for k, v in sorted(mission.project_commands.items())]
	lines += [
		"",
		"When done:",
		"1. Commit your work with descriptive messages on the current branch",
		f"2. Write an evidence bundle to {mission_dir / 'artifacts' / f'evidence-{item.id}.json'} with keys "
		"objective_id, agent, summary, files_changed{created,modified,deleted}, commands_run, "
		"tests{added,result (pass|fail|skip|none)}",
		f"3. Write a briefing for later agents to {mission_dir / 'briefings' / f'{item.role.value}-output-{item.id}.json'}",
		"If a test run fails, print one line per failing test as: FAILED <test-id>",
	]
	return "\n".join(lines)


def build_conflict_prompt(branch: str, item: WorkItem, mission: Mission, mission_dir: Path) -> str:
	briefings = mission_dir / "briefings"
	return "\n".join([
		f"You are the {Role.CONFLICT_RESOLVER.value} for mission {mission.id}.",
		f"A merge of {branch} (objective {item.id}: {item.title}) into {mission.integration_branch} "
		"is in progress in this checkout and has conflicts.",
		"",
		f"Read the briefings in {briefings} to understand what each side intended.",
		"Resolve every conflict so both sides' intent is preserved, run the project's tests if available,",
		"then `git add` the resolved files and finish with `git commit --no-edit`.",
		"If you cannot resolve the conflict safely, exit without committing.",
	])


class AgentRunner:
	"""Spawns and tracks agent subprocesses."""

	def __init__(self, config: CommandDeckConfig) -> None:
		self.config = config
		self._active: dict[tuple[str, str], asyncio.subprocess.Process] = {}

	def build_command(self, prompt: str, model: str, allowed_tools: list[str] | None = None) -> list[str]:
		cmd = [self.config.worker.command, "-p", prompt]
		tools = self.config.worker.allowed_tools if allowed_tools is None else allowed_tools
		if tools:
			cmd += ["--allowedTools", ",".join(tools)]
		cmd.append("--dangerously-skip-permissions")
		if model:
			cmd += ["--model", model]
		return cmd

	@property
	def active(self) -> list[tuple[str, str]]:
		return list(self._active)

	async def run(
		self,
		prompt: str,
		cwd: Path,
		*,
		agent: Role,
		mission: Mission,
		objective_id: str = "",
		model: str = "",
		timeout: float | None = None,
		stderr_path: Path | None = None,
		on_line: Callable[[str], None] | None = None,
		allowed_tools: list[str] | None = None,
	) -> WorkerResult:
		"""Run one agent to completion (or timeout) and collect its output."""
		timeout = timeout if timeout is not None else self.config.worker.timeout
		cmd = self.build_command(prompt, model or self.config.model_for(agent, mission.repo), allowed_tools)
		env = claude_subprocess_env({
			"COMMANDDECK_AGENT": agent.value,
			"COMMANDDECK_MISSION_ID": mission.id,
		})
		key = (mission.id, objective_id or agent.value)
		try:
			proc = await asyncio.create_subprocess_exec(
				*cmd,
				cwd=str(cwd),
				stdin=asyncio.subprocess.DEVNULL,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
				env=env,
				limit=STREAM_LIMIT,
			)
		except (FileNotFoundError, OSError) as exc:
			logger.error("Failed to spawn %s for %s: %s", agent.value, key[1], exc)
			return WorkerResult(success=False, stderr=f"failed to spawn agent: {exc}")

		self._active[key] = proc
		out_lines: list[str] = []
		err_chunks: list[str] = []

		async def _read_stdout() -> None:
			assert proc.stdout is not None
			async for raw in proc.stdout:
				line = raw.decode(errors="replace")
				out_lines.append(line)
				if on_line is not None:
					on_line(line.rstrip("\n"))

		async def _read_stderr() -> None:
			assert proc.stderr is not None
			err_chunks.append((await proc.stderr.read()).decode(errors="replace"))

		timed_out = False
		try:
			await asyncio.wait_for(asyncio.gather(_read_stdout(), _read_stderr(), proc.wait()), timeout=timeout)
		except asyncio.TimeoutError:
			timed_out = True
			logger.warning("Agent %s for %s timed out after %ss", agent.value, key[1], timeout)
			try:
				proc.kill()
				await proc.wait()
			except ProcessLookupError:
				pass
		finally:
			self._active.pop(key, None)

		stdout = "".join(out_lines)
		stderr = "".join(err_chunks)
		if stderr.strip() and stderr_path is not None:
			stderr_path.parent.mkdir(parents=True, exist_ok=True)
			with open(stderr_path, "a", encoding="utf-8") as f:
				f.write(f"{_now_iso()}\n{stderr}\n\n")

		auth_failure = is_auth_failure(stderr)
		result = WorkerResult(
			success=proc.returncode == 0 and not timed_out,
			exit_code=proc.returncode,
			stdout=stdout,
			stderr=stderr,
			auth_failure=auth_failure,
			auth_url=detect_auth_url(stderr) if auth_failure else "",
			timed_out=timed_out,
		)
		log_event(
			"worker.exit", mission_id=mission.id, repo=mission.repo, objective_id=objective_id,
			agent=agent.value, exit_code=proc.returncode,
			status="ok" if result.success else "timeout" if timed_out else "auth_failure" if auth_failure else "error",
		)
		return result

	async def kill(self, mission_id: str, objective_id: str) -> bool:
		"""SIGTERM a running agent, then SIGKILL after the grace period. False if not running."""
		proc = self._active.get((mission_id, objective_id))
		if proc is None or proc.returncode is not None:
			return False
		try:
			proc.terminate()
		except ProcessLookupError:
			return False
		try:
			await asyncio.wait_for(proc.wait(), timeout=self.config.worker.kill_grace)
		except asyncio.TimeoutError:
			try:
				proc.kill()
			except ProcessLookupError:
				pass
		logger.info("Killed agent for %s/%s", mission_id, objective_id)
		return True

	async def kill_all(self, mission_id: str | None = None) -> int:
		killed = 0
		for mid, obj in list(self._active):
			if mission_id is None or mid == mission_id:
				if await self.kill(mid, obj):
					killed += 1
		return killed


class AgentWorker(Worker):
	"""Executes a work item with a worker agent inside its worktree."""

	def __init__(self, runner: AgentRunner, store: MissionStore, tracker: HealthTracker | None = None) -> None:
		self.runner = runner
		self.store = store
		self.tracker = tracker

	async def execute(self, workspace_path: Path, item: WorkItem, mission: Mission) -> WorkerResult:
		mission_dir = self.store.mission_dir(mission.repo, mission.id)

		def _on_line(line: str) -> None:
			match = TEST_FAILURE_RE.match(line)
			if match and self.tracker is not None:
				count = self.tracker.record_test_failure(mission.id, item.id, match.group(1))
				logger.info("Objective %s: test %s failed (%d in a row)", item.id, match.group(1), count)

		return await self.runner.run(
			build_worker_prompt(item, mission, mission_dir),
			workspace_path,
			agent=item.role,
			mission=mission,
			objective_id=item.id,
			stderr_path=self.store.artifacts_dir(mission.repo, mission.id) / f"worker-stderr-{item.id}.log",
			on_line=_on_line,
		)


class AgentReviewer(Reviewer):
	"""Runs specialist review agents against the project checkout."""

	def __init__(self, runner: AgentRunner, store: MissionStore, repo_dir: Callable[[str], Path]) -> None:
		self.runner = runner
		self.store = store
		self._repo_dir = repo_dir

	async def review(self, role: Role, item: WorkItem, mission: Mission) -> WorkerResult:
		ctx = ReviewContext(
			evidence_path=self.store.evidence_path(mission.repo, mission.id, item.id),
			briefings_dir=self.store.briefings_dir(mission.repo, mission.id),
			repo_dir=self._repo_dir(mission.repo),
		)
		prompt = build_review_prompt(role, item, mission, ctx)
		result = await self.runner.run(
			prompt,
			ctx.repo_dir,
			agent=role,
			mission=mission,
			objective_id=f"{item.id}-{role.value}",
			stderr_path=self.store.artifacts_dir(mission.repo, mission.id) / f"worker-stderr-{role.value}-{item.id}.log",
			allowed_tools=["Read", "Glob", "Grep", "Bash", "Write"],
		)
		result.verdict = self._read_verdict(ctx.briefings_dir / f"{role.value}-output-{item.id}.json", result)
		return result

	@staticmethod
	def _read_verdict(path: Path, result: WorkerResult) -> str:
		data = None
		if path.exists():
			try:
				data = json.loads(path.read_text(encoding="utf-8"))
			except json.JSONDecodeError:
				data = None
		if data is None:
			data = extract_json(result.stdout)
		if isinstance(data, dict) and data.get("verdict") in ("passed", "issues"):
			return str(data["verdict"])
		return "passed" if result.success else "issues"


class AgentConflictResolver(ConflictResolver):
	"""Runs the conflict-resolution agent in the checkout holding the conflicted merge."""

	def __init__(self, runner: AgentRunner, store: MissionStore, repo_dir: Callable[[str], Path]) -> None:
		self.runner = runner
		self.store = store
		self._repo_dir = repo_dir

	async def resolve(self, branch: str, item: WorkItem, mission: Mission) -> bool:
		mission_dir = self.store.mission_dir(mission.repo, mission.id)
		entry = SessionLogEntry(agent=Role.CONFLICT_RESOLVER.value, objective_id=item.id)
		result = await self.runner.run(
			build_conflict_prompt(branch, item, mission, mission_dir),
			self._repo_dir(mission.repo),
			agent=Role.CONFLICT_RESOLVER,
			mission=mission,
			objective_id=f"{item.id}-merge",
			stderr_path=self.store.artifacts_dir(mission.repo, mission.id) / f"worker-stderr-merge-{item.id}.log",
		)
		entry.ended_at = datetime.now(timezone.utc).isoformat()
		entry.exit_code = result.exit_code

		def _count(m: Mission) -> None:
			m.safety.session_count += 1
			m.session_log.append(entry)

		await self.store.mutate(mission.repo, mission.id, _count)
		return result.success
