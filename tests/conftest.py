"""Shared pytest fixtures and factory functions for commanddeck tests."""

from __future__ import annotations

import json
import os
import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from commanddeck.collaborators import (
	Notifier,
	Planner,
	PullRequestInfo,
	PullRequestProvider,
	Reviewer,
	Worker,
	WorkerResult,
)
from commanddeck.config import CommandDeckConfig
from commanddeck.models import Mission, MissionStatus, Role, WorkItem
from commanddeck.store import MissionStore

GIT_ENV = {
	"GIT_AUTHOR_NAME": "test", "GIT_AUTHOR_EMAIL": "test@test.com",
	"GIT_COMMITTER_NAME": "test", "GIT_COMMITTER_EMAIL": "test@test.com",
}


def git(cwd: Path, *args: str) -> str:
	"""Run git synchronously in ``cwd`` and return stdout."""
	result = subprocess.run(
		["git", *args], cwd=str(cwd), check=True, capture_output=True, text=True,
		env={**os.environ, **GIT_ENV},
	)
	return result.stdout


def commit_file(repo: Path, name: str, content: str, message: str = "") -> None:
	path = repo / name
	path.parent.mkdir(parents=True, exist_ok=True)
	path.write_text(content)
	git(repo, "add", name)
	git(repo, "commit", "-m", message or f"Update {name}")


def init_repo(path: Path) -> Path:
	"""Create a git repo at ``path`` on branch main with one commit."""
	path.mkdir(parents=True)
	git(path, "init", "-b", "main")
	# merges made by the code under test run with the plain process environment
	git(path, "config", "user.name", "test")
	git(path, "config", "user.email", "test@test.com")
	commit_file(path, "README.md", "# Test repo\n", "Initial commit")
	return path


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
	"""Project directory holding one real git repository named ``demo``."""
	projects = tmp_path / "projects"
	init_repo(projects / "demo")
	return projects


@pytest.fixture()
def store(tmp_path: Path) -> MissionStore:
	return MissionStore(tmp_path / "state", lock_timeout=2.0, lock_retry_interval=0.01)


@pytest.fixture()
def config(tmp_path: Path) -> CommandDeckConfig:
	"""Config pointing at tmp_path with a fast planner flush window."""
	cfg = CommandDeckConfig()
	cfg.store.state_dir = str(tmp_path / "state")
	cfg.workspace.project_dir = str(tmp_path / "projects")
	cfg.planner.flush_timeout = 0.1
	cfg.planner.flush_interval = 0.01
	return cfg


def make_work_item(**overrides: Any) -> WorkItem:
	"""Create a WorkItem with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"id": "obj-1",
		"title": "Test objective",
		"description": "Do the thing",
	}
	defaults.update(overrides)
	return WorkItem(**defaults)


def make_mission(**overrides: Any) -> Mission:
	"""Create a Mission with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"id": "mission-20260101-000000-abcd",
		"repo": "demo",
		"description": "Test mission",
		"integration_branch": "commanddeck/mission-20260101-000000-abcd/integration",
		"status": MissionStatus.IN_PROGRESS,
	}
	defaults.update(overrides)
	return Mission(**defaults)


# Fake collaborators shared by the scheduler and service tests


class StaticPlanner(Planner):
	def __init__(self, items: Callable[[], list[WorkItem]] | None = None, error: Exception | None = None) -> None:
		self.items = items or (lambda: [])
		self.error = error
		self.store: MissionStore | None = None

	async def decompose(self, mission: Mission) -> None:
		if self.error is not None:
			raise self.error
		assert self.store is not None
		await self.store.replace_items(mission.repo, mission.id, self.items())


class CommitWorker(Worker):
	"""Commits one file per item; ``fail`` ids exit non-zero, ``readme`` ids all edit README.md."""

	def __init__(self, store: MissionStore, fail: set[str] | None = None, readme: set[str] | None = None) -> None:
		self.store = store
		self.fail = fail or set()
		self.readme = readme or set()
		self.calls: list[str] = []
		self.seen_files: dict[str, list[str]] = {}

	async def execute(self, workspace_path: Path, item: WorkItem, mission: Mission) -> WorkerResult:
		self.calls.append(item.id)
		self.seen_files[item.id] = sorted(p.name for p in workspace_path.iterdir() if p.suffix == ".txt")
		if item.id in self.fail:
			return WorkerResult(success=False, exit_code=1, stderr="tests failed")
		if item.id in self.readme:
			commit_file(workspace_path, "README.md", f"# rewritten by {item.id}\n")
		else:
			commit_file(workspace_path, f"{item.id}.txt", f"{item.title}\n")
		evidence = self.store.evidence_path(mission.repo, mission.id, item.id)
		evidence.write_text(json.dumps({
			"objective_id": item.id,
			"agent": item.role.value,
			"summary": f"Implemented {item.title}",
			"files_changed": {"created": [f"{item.id}.txt"]},
			"tests": {"added": 1, "result": "pass"},
		}))
		return WorkerResult(success=True, exit_code=0)


class RecordingReviewer(Reviewer):
	def __init__(self, verdict: str = "passed") -> None:
		self.verdict = verdict
		self.calls: list[tuple[Role, str]] = []

	async def review(self, role: Role, item: WorkItem, mission: Mission) -> WorkerResult:
		self.calls.append((role, item.id))
		return WorkerResult(success=True, exit_code=0, verdict=self.verdict)


class FakePullRequests(PullRequestProvider):
	def __init__(self, state: str = "open", error: Exception | None = None) -> None:
		self.state = state
		self.error = error
		self.bodies: list[str] = []
		self.closed: list[str] = []
		self.updated: list[str] = []

	async def create_pull_request(self, mission: Mission, body: str) -> PullRequestInfo:
		if self.error is not None:
			raise self.error
		self.bodies.append(body)
		return PullRequestInfo(number=1, url="https://github.com/o/demo/pull/1")

	async def update_pull_request(self, mission: Mission, body: str) -> bool:
		self.updated.append(body)
		return True

	async def merge_pull_request(self, mission: Mission) -> bool:
		return True

	async def close_pull_request(self, mission: Mission) -> bool:
		self.closed.append(mission.id)
		return True

	async def pull_request_state(self, mission: Mission) -> str:
		return self.state


class RecordingNotifier(Notifier):
	def __init__(self) -> None:
		self.messages: list[str] = []

	async def post(self, text: str) -> None:
		self.messages.append(text)

	def any(self, fragment: str) -> bool:
		return any(fragment in m for m in self.messages)


def three_items() -> list[WorkItem]:
	return [
		make_work_item(id="obj-1", title="Add file one"),
		make_work_item(id="obj-2", title="Add file two"),
		make_work_item(id="obj-3", title="Add file three", phase=2, depends_on=["obj-1", "obj-2"]),
	]

