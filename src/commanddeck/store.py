"""Mission store -- versioned, lock-protected JSON documents on disk.

Layout under the state directory::

	projects/<repo>/missions/<mission-id>/
		mission.json          the authoritative mission document
		activity-log.md       append-only human-readable log
		plan.json             planner output
		briefings/            agent hand-off notes
		artifacts/            evidence, stderr logs, health alerts
		backups/

Every change to ``mission.json`` goes through ``mutate``: the document is
re-read under a per-file DirectoryLock, the mutator runs, the version is
bumped and the file is replaced atomically via write-temp-then-rename.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from commanddeck.config import StoreConfig
from commanddeck.locking import DEFAULT_RETRY_INTERVAL, DEFAULT_TIMEOUT, DirectoryLock
from commanddeck.models import (
	Mission,
	MissionStatus,
	SafetyLimits,
	SessionLogEntry,
	WorkItem,
	_now_iso,
)
from commanddeck.observability import log_event
from commanddeck.validate import validate_repo_name

logger = logging.getLogger(__name__)

Mutator = Callable[[Mission], "Mission | None"]


class MissionNotFound(LookupError):
	"""No mission document exists for the given (repo, mission id)."""


class MissionClosedError(RuntimeError):
	"""A mutation was attempted on a mission in a terminal state."""


def new_mission_id(now: datetime | None = None) -> str:
	now = now or datetime.now(timezone.utc)
	return f"mission-{now:%Y%m%d-%H%M%S}-{secrets.token_hex(2)}"


def integration_branch_for(mission_id: str) -> str:
	return f"commanddeck/{mission_id}/integration"


class MissionStore:
	"""Durable mission persistence shared by every process touching a mission."""

	def __init__(
		self,
		state_dir: str | Path,
		lock_timeout: float = DEFAULT_TIMEOUT,
		lock_retry_interval: float = DEFAULT_RETRY_INTERVAL,
	) -> None:
		self.state_dir = Path(state_dir)
		self.lock_timeout = lock_timeout
		self.lock_retry_interval = lock_retry_interval

	@classmethod
	def from_config(cls, config: StoreConfig) -> MissionStore:
		return cls(config.resolved_state_dir, config.lock_timeout, config.lock_retry_interval)

	# -- paths --

	@property
	def projects_dir(self) -> Path:
		return self.state_dir / "projects"

	def mission_dir(self, repo: str, mission_id: str) -> Path:
		validate_repo_name(repo)
		validate_repo_name(mission_id)
		return self.projects_dir / repo / "missions" / mission_id

	def mission_path(self, repo: str, mission_id: str) -> Path:
		return self.mission_dir(repo, mission_id) / "mission.json"

	def plan_path(self, repo: str, mission_id: str) -> Path:
		return self.mission_dir(repo, mission_id) / "plan.json"

	def briefings_dir(self, repo: str, mission_id: str) -> Path:
		return self.mission_dir(repo, mission_id) / "briefings"

	def artifacts_dir(self, repo: str, mission_id: str) -> Path:
		return self.mission_dir(repo, mission_id) / "artifacts"

	def evidence_path(self, repo: str, mission_id: str, item_id: str) -> Path:
		return self.artifacts_dir(repo, mission_id) / f"evidence-{item_id}.json"

	def health_alerts_path(self, repo: str, mission_id: str) -> Path:
		return self.artifacts_dir(repo, mission_id) / "health-alerts.ndjson"

	def activity_log_path(self, repo: str, mission_id: str) -> Path:
		return self.mission_dir(repo, mission_id) / "activity-log.md"

	def _lock(self, path: Path) -> DirectoryLock:
		return DirectoryLock(path, timeout=self.lock_timeout, retry_interval=self.lock_retry_interval)

	# -- document I/O --

	@staticmethod
	def _load(path: Path) -> Mission:
		with open(path, encoding="utf-8") as f:
			return Mission.from_dict(json.load(f))

	@staticmethod
	def _write(path: Path, mission: Mission) -> None:
		tmp = path.with_name(f"{path.name}.{os.getpid()}.tmp")
		with open(tmp, "w", encoding="utf-8") as f:
			json.dump(mission.to_dict(), f, indent=2)
			f.write("\n")
			f.flush()
			os.fsync(f.fileno())
		os.replace(tmp, path)

	async def create(
		self,
		repo: str,
		description: str,
		*,
		default_branch: str = "main",
		safety: SafetyLimits | None = None,
		project_commands: dict[str, str] | None = None,
		notify_channel: str = "",
		notify_thread: str = "",
	) -> Mission:
		"""Create and persist a new mission in the ``planning`` state."""
		validate_repo_name(repo)
		mission_id = new_mission_id()
		while self.mission_path(repo, mission_id).exists():
			mission_id = new_mission_id()

		mission = Mission(
			id=mission_id,
			repo=repo,
			description=description,
			default_branch=default_branch,
			integration_branch=integration_branch_for(mission_id),
			status=MissionStatus.PLANNING,
			safety=safety or SafetyLimits(),
			project_commands=dict(project_commands or {}),
			notify_channel=notify_channel,
			notify_thread=notify_thread,
		)
		mdir = self.mission_dir(repo, mission_id)
		for sub in ("briefings", "artifacts", "backups"):
			(mdir / sub).mkdir(parents=True, exist_ok=True)

		path = self.mission_path(repo, mission_id)
		async with self._lock(path):
			self._write(path, mission)

		self.activity_log_path(repo, mission_id).write_text(
			f"# Activity log: {mission_id}\n\n"
			f"**Repository:** {repo}\n\n"
			f"**Task:** {description}\n\n"
			f"## Entries\n\n",
			encoding="utf-8",
		)
		log_event("mission.created", mission_id=mission_id, repo=repo)
		return mission

	async def read(self, repo: str, mission_id: str) -> Mission | None:
		"""Return the current document, or None if the mission does not exist."""
		path = self.mission_path(repo, mission_id)
		if not path.exists():
			return None
		return self._load(path)

	async def get(self, repo: str, mission_id: str) -> Mission:
		"""Like read, but raises MissionNotFound instead of returning None."""
		mission = await self.read(repo, mission_id)
		if mission is None:
			raise MissionNotFound(f"Mission {mission_id} not found in {repo}")
		return mission

	async def mutate(self, repo: str, mission_id: str, fn: Mutator) -> Mission:
		"""Apply ``fn`` to the current document under the mission lock and persist it.

		``fn`` may modify the mission in place (returning None) or return a
		replacement. If ``fn`` raises, nothing is written.

		Raises:
			LockTimeout: If the lock could not be acquired. Retryable.
			MissionNotFound: If the document does not exist.
			MissionClosedError: If the mission is already terminal.
		"""
		path = self.mission_path(repo, mission_id)
		async with self._lock(path):
			if not path.exists():
				raise MissionNotFound(f"Mission {mission_id} not found in {repo}")
			mission = self._load(path)
			if mission.is_terminal:
				raise MissionClosedError(
					f"Mission {mission_id} is {mission.status.value}; terminal missions are immutable"
				)
			previous_version = mission.version
			result = fn(mission)
			if result is not None:
				mission = result
			mission.version = previous_version + 1
			mission.updated_at = _now_iso()
			self._write(path, mission)
		return mission

	# -- pre-built mutations --

	async def append_session_log(self, repo: str, mission_id: str, entry: SessionLogEntry) -> Mission:
		def _append(m: Mission) -> None:
			m.session_log.append(entry)
		return await self.mutate(repo, mission_id, _append)

	async def increment_session_count(self, repo: str, mission_id: str, by: int = 1) -> Mission:
		def _increment(m: Mission) -> None:
			m.safety.session_count += by
		return await self.mutate(repo, mission_id, _increment)

	async def set_status(
		self, repo: str, mission_id: str, status: MissionStatus, message: str = "",
	) -> Mission:
		def _set(m: Mission) -> None:
			m.status = status
			m.status_message = message
		mission = await self.mutate(repo, mission_id, _set)
		log_event("mission.status", mission_id=mission_id, status=status.value, message=message)
		return mission

	async def update_item(self, repo: str, mission_id: str, item_id: str, **changes: object) -> Mission:
		"""Set attributes on one work item.

		Raises:
			KeyError: If the item does not exist (nothing is written).
		"""
		def _update(m: Mission) -> None:
			item = m.get_item(item_id)
			if item is None:
				raise KeyError(f"Work item {item_id} not found in {mission_id}")
			for key, value in changes.items():
				if not hasattr(item, key):
					raise AttributeError(f"WorkItem has no field {key!r}")
				setattr(item, key, value)
		return await self.mutate(repo, mission_id, _update)

	async def replace_items(self, repo: str, mission_id: str, items: list[WorkItem]) -> Mission:
		def _replace(m: Mission) -> None:
			m.work_items = list(items)
		return await self.mutate(repo, mission_id, _replace)

	# -- discovery --

	def _mission_files(self, repo: str | None = None) -> list[Path]:
		if not self.projects_dir.exists():
			return []
		pattern = f"{repo}/missions/*/mission.json" if repo else "*/missions/*/mission.json"
		return sorted(self.projects_dir.glob(pattern))

	def list_missions(self, repo: str | None = None) -> list[Mission]:
		"""All missions (optionally for one repo), oldest first. Unreadable documents are skipped."""
		if repo is not None:
			validate_repo_name(repo)
		missions: list[Mission] = []
		for path in self._mission_files(repo):
			try:
				missions.append(self._load(path))
			except (OSError, ValueError, KeyError) as exc:
				logger.warning("Skipping unreadable mission document %s: %s", path, exc)
		missions.sort(key=lambda m: m.created_at)
		return missions

	def find(self, mission_id: str) -> Mission | None:
		"""Locate a mission by id across every repository."""
		validate_repo_name(mission_id)
		if not self.projects_dir.exists():
			return None
		for path in self.projects_dir.glob(f"*/missions/{mission_id}/mission.json"):
			return self._load(path)
		return None

	def latest(self) -> Mission | None:
		missions = self.list_missions()
		return missions[-1] if missions else None

	def append_activity_log(self, repo: str, mission_id: str, text: str) -> None:
		path = self.activity_log_path(repo, mission_id)
		path.parent.mkdir(parents=True, exist_ok=True)
		with open(path, "a", encoding="utf-8") as f:
			f.write(f"- `{_now_iso()}` {text}\n")
