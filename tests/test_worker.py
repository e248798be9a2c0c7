"""Tests for agent subprocess handling."""

from __future__ import annotations

import asyncio
import json
import stat
from pathlib import Path

import pytest

from commanddeck.collaborators import WorkerResult
from commanddeck.config import CommandDeckConfig
from commanddeck.health import HealthTracker
from commanddeck.models import Role
from commanddeck.store import MissionStore
from commanddeck.worker import (
	AgentReviewer,
	AgentRunner,
	AgentWorker,
	build_worker_prompt,
	detect_auth_url,
	is_auth_failure,
)
from conftest import make_mission, make_work_item


def _agent_script(tmp_path: Path, body: str) -> str:
	"""Write an executable stand-in for the agent CLI and return its path."""
	path = tmp_path / "fake-agent"
	path.write_text("#!/bin/sh\n" + body + "\n")
	path.chmod(path.stat().st_mode | stat.S_IEXEC)
	return str(path)


def _runner(config: CommandDeckConfig, command: str) -> AgentRunner:
	config.worker.command = command
	return AgentRunner(config)


class TestAuthDetection:
	@pytest.mark.parametrize("stderr", [
		"Error: Unauthorized",
		"authentication required, please log in",
		"Your token has expired",
		"invalid oauth token",
	])
	def test_detected(self, stderr: str) -> None:
		assert is_auth_failure(stderr)

	def test_not_detected(self) -> None:
		assert not is_auth_failure("")
		assert not is_auth_failure("SyntaxError: invalid syntax")

	def test_url(self) -> None:
		stderr = "Unauthorized. Visit https://console.anthropic.com/login?x=1 to sign in"
		assert detect_auth_url(stderr) == "https://console.anthropic.com/login?x=1"
		assert detect_auth_url("nothing") == ""


class TestWorkerPrompt:
	def test_contains_item_and_paths(self, tmp_path: Path) -> None:
		item = make_work_item(
			id="obj-2", title="Add cache", context_sources=["docs/cache.md"], files_hint=["src/cache.py"],
		)
		mission = make_mission(project_commands={"test": "pytest -q"})
		prompt = build_worker_prompt(item, mission, tmp_path)
		assert "objective obj-2: Add cache" in prompt
		assert "  - docs/cache.md" in prompt
		assert "  - src/cache.py" in prompt
		assert "  - test: pytest -q" in prompt
		assert str(tmp_path / "artifacts" / "evidence-obj-2.json") in prompt


class TestAgentRunner:
	def test_build_command(self, config: CommandDeckConfig) -> None:
		runner = AgentRunner(config)
		cmd = runner.build_command("hi", "opus", ["Read"])
		assert cmd == ["claude", "-p", "hi", "--allowedTools", "Read", "--dangerously-skip-permissions", "--model", "opus"]

	async def test_success(self, config: CommandDeckConfig, tmp_path: Path) -> None:
		runner = _runner(config, _agent_script(tmp_path, 'echo "done: $COMMANDDECK_AGENT"'))
		result = await runner.run("prompt", tmp_path, agent=Role.IMPLEMENTER, mission=make_mission())
		assert result.success
		assert result.exit_code == 0
		assert "done: implementer" in result.stdout

	async def test_failure_persists_stderr(self, config: CommandDeckConfig, tmp_path: Path) -> None:
		runner = _runner(config, _agent_script(tmp_path, 'echo "boom" >&2\nexit 3'))
		log = tmp_path / "artifacts" / "worker-stderr-obj-1.log"
		result = await runner.run(
			"prompt", tmp_path, agent=Role.IMPLEMENTER, mission=make_mission(), stderr_path=log,
		)
		assert not result.success
		assert result.exit_code == 3
		assert result.error == "boom"
		assert "boom" in log.read_text()

	async def test_auth_failure(self, config: CommandDeckConfig, tmp_path: Path) -> None:
		body = 'echo "Unauthorized: visit https://example.com/oauth/start" >&2\nexit 1'
		runner = _runner(config, _agent_script(tmp_path, body))
		result = await runner.run("prompt", tmp_path, agent=Role.IMPLEMENTER, mission=make_mission())
		assert result.auth_failure
		assert result.auth_url == "https://example.com/oauth/start"
		assert result.error == "agent authentication failed"

	async def test_timeout(self, config: CommandDeckConfig, tmp_path: Path) -> None:
		runner = _runner(config, _agent_script(tmp_path, "exec sleep 30"))
		result = await runner.run(
			"prompt", tmp_path, agent=Role.IMPLEMENTER, mission=make_mission(), timeout=0.3,
		)
		assert result.timed_out
		assert not result.success
		assert runner.active == []

	async def test_missing_binary(self, config: CommandDeckConfig, tmp_path: Path) -> None:
		runner = _runner(config, str(tmp_path / "no-such-agent"))
		result = await runner.run("prompt", tmp_path, agent=Role.IMPLEMENTER, mission=make_mission())
		assert not result.success
		assert "failed to spawn" in result.stderr

	async def test_kill_all(self, config: CommandDeckConfig, tmp_path: Path) -> None:
		config.worker.kill_grace = 1.0
		runner = _runner(config, _agent_script(tmp_path, "exec sleep 30"))
		mission = make_mission()
		task = asyncio.create_task(
			runner.run("prompt", tmp_path, agent=Role.IMPLEMENTER, mission=mission, objective_id="obj-1"),
		)
		for _ in range(100):
			if runner.active:
				break
			await asyncio.sleep(0.02)
		assert await runner.kill_all(mission.id) == 1
		result = await task
		assert not result.success
		assert await runner.kill("other", "obj-1") is False


class TestAgentWorker:
	async def test_feeds_test_failures_to_tracker(self, config: CommandDeckConfig, store: MissionStore, tmp_path: Path) -> None:
		body = 'echo "FAILED tests/test_a.py::test_x"\necho "FAILED tests/test_a.py::test_x"'
		runner = _runner(config, _agent_script(tmp_path, body))
		tracker = HealthTracker()
		mission = make_mission()
		result = await AgentWorker(runner, store, tracker).execute(tmp_path, make_work_item(), mission)
		assert result.success
		assert tracker.failure_count(mission.id, "obj-1") == 2


class TestAgentReviewer:
	async def test_verdict_from_briefing(self, config: CommandDeckConfig, store: MissionStore, tmp_path: Path) -> None:
		mission = await store.create("demo", "review")
		briefing = store.briefings_dir("demo", mission.id) / "security-reviewer-output-obj-1.json"
		briefing.write_text(json.dumps({"verdict": "issues", "findings": ["token logged"]}))
		runner = _runner(config, _agent_script(tmp_path, "exit 0"))
		reviewer = AgentReviewer(runner, store, lambda repo: tmp_path)
		result = await reviewer.review(Role.SECURITY_REVIEWER, make_work_item(), mission)
		assert result.verdict == "issues"

	def test_verdict_fallbacks(self, tmp_path: Path) -> None:
		missing = tmp_path / "none.json"
		stdout = 'Review complete.\n{"verdict": "passed", "summary": "fine"}'
		assert AgentReviewer._read_verdict(missing, WorkerResult(success=True, stdout=stdout)) == "passed"
		assert AgentReviewer._read_verdict(missing, WorkerResult(success=True)) == "passed"
		assert AgentReviewer._read_verdict(missing, WorkerResult(success=False)) == "issues"
