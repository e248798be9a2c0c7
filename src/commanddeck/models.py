"""Data models for CommandDeck mission state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
	return uuid4().hex[:12]


def parse_iso(value: str) -> datetime:
	"""Parse an ISO-8601 timestamp, accepting a trailing Z and naive values (as UTC)."""
	parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
	if parsed.tzinfo is None:
		parsed = parsed.replace(tzinfo=timezone.utc)
	return parsed


class MissionStatus(str, Enum):
	"""Mission state machine states."""

	PLANNING = "planning"
	PENDING_APPROVAL = "pending_approval"
	IN_PROGRESS = "in_progress"
	CHECKPOINT_PAUSED = "checkpoint_paused"
	MERGING = "merging"
	REVIEW = "review"
	COMPLETED = "completed"
	FAILED = "failed"
	ABORTED = "aborted"
	PAUSED = "paused"

	@property
	def is_terminal(self) -> bool:
		return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({MissionStatus.COMPLETED, MissionStatus.ABORTED, MissionStatus.FAILED})


class ItemStatus(str, Enum):
	"""Work item states."""

	BLOCKED = "blocked"
	READY = "ready"
	IN_PROGRESS = "in_progress"
	DONE = "done"
	FAILED = "failed"
	CHECKPOINT_PAUSED = "checkpoint_paused"


class RiskCategory(str, Enum):
	"""Risk taxonomy attached to work items."""

	AUTH = "auth"
	SECURITY = "security"
	MIGRATION = "migration"
	CI_WORKFLOW = "ci-workflow"
	INFRA = "infra"
	DEPLOY = "deploy"
	DEPENDENCY = "dependency"


class Role(str, Enum):
	"""Closed set of agent roles a work item or review can be assigned to."""

	PLANNER = "planner"
	IMPLEMENTER = "implementer"
	ARCHITECT = "architect"
	DATA_MODELER = "data-modeler"
	SECURITY_REVIEWER = "security-reviewer"
	TEST_REVIEWER = "test-reviewer"
	INFRA_REVIEWER = "infra-reviewer"
	CONFLICT_RESOLVER = "conflict-resolver"
	HUMAN = "human"


@dataclass
class SessionLogEntry:
	"""Immutable record of a single agent invocation."""

	session_id: str = field(default_factory=_new_id)
	agent: str = ""
	objective_id: str = ""
	started_at: str = field(default_factory=_now_iso)
	ended_at: str | None = None
	exit_code: int | None = None

	def to_dict(self) -> dict[str, Any]:
		return {
			"session_id": self.session_id,
			"agent": self.agent,
			"objective_id": self.objective_id,
			"started_at": self.started_at,
			"ended_at": self.ended_at,
			"exit_code": self.exit_code,
		}

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> SessionLogEntry:
		return cls(
			session_id=str(data.get("session_id", "")),
			agent=str(data.get("agent", "")),
			objective_id=str(data.get("objective_id", "")),
			started_at=str(data.get("started_at", "")),
			ended_at=data.get("ended_at"),
			exit_code=data.get("exit_code"),
		)


@dataclass
class SafetyLimits:
	"""Per-mission ceilings on sessions, wall-clock time and parallelism."""

	max_sessions: int = 50
	max_elapsed_hours: float = 6.0
	max_parallel_workers: int = 3
	session_count: int = 0
	started_at: str = field(default_factory=_now_iso)

	def elapsed_hours(self, now: datetime | None = None) -> float:
		now = now or datetime.now(timezone.utc)
		return (now - parse_iso(self.started_at)).total_seconds() / 3600.0

	@property
	def remaining_sessions(self) -> int:
		return max(0, self.max_sessions - self.session_count)

	def exceeded(self, now: datetime | None = None) -> str:
		"""Return a human-readable reason if any limit is hit, else an empty string."""
		if self.session_count >= self.max_sessions:
			return f"session limit reached ({self.session_count}/{self.max_sessions})"
		elapsed = self.elapsed_hours(now)
		if elapsed >= self.max_elapsed_hours:
			return f"time limit reached ({elapsed:.1f}h/{self.max_elapsed_hours}h)"
		return ""

	def to_dict(self) -> dict[str, Any]:
		return {
			"max_sessions": self.max_sessions,
			"max_elapsed_hours": self.max_elapsed_hours,
			"max_parallel_workers": self.max_parallel_workers,
			"session_count": self.session_count,
			"started_at": self.started_at,
		}

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> SafetyLimits:
		sl = cls()
		if "max_sessions" in data:
			sl.max_sessions = int(data["max_sessions"])
		if "max_elapsed_hours" in data:
			sl.max_elapsed_hours = float(data["max_elapsed_hours"])
		if "max_parallel_workers" in data:
			sl.max_parallel_workers = int(data["max_parallel_workers"])
		if "session_count" in data:
			sl.session_count = int(data["session_count"])
		if "started_at" in data:
			sl.started_at = str(data["started_at"])
		return sl


@dataclass
class PullRequestRef:
	"""Reference to the pull request a mission was handed off as."""

	number: int | None = None
	url: str = ""
	state: str = ""  # open/merged/closed

	def to_dict(self) -> dict[str, Any]:
		return {"number": self.number, "url": self.url, "state": self.state}

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> PullRequestRef:
		number = data.get("number")
		return cls(
			number=int(number) if number is not None else None,
			url=str(data.get("url", "")),
			state=str(data.get("state", "")),
		)


@dataclass
class WorkItem:
	"""A single schedulable, dependency-bound unit of a mission."""

	id: str = field(default_factory=_new_id)
	title: str = ""
	description: str = ""
	status: ItemStatus = ItemStatus.READY
	phase: int = 1
	depends_on: list[str] = field(default_factory=list)
	role: Role = Role.IMPLEMENTER
	risk_flags: set[RiskCategory] = field(default_factory=set)
	checkpoint: bool = False
	checkpoint_message: str = ""
	checkpoint_approved: bool = False
	context_sources: list[str] = field(default_factory=list)
	files_hint: list[str] = field(default_factory=list)
	worker_index: int | None = None
	git_branch: str = ""
	merged: bool = False
	reviewed_by: set[Role] = field(default_factory=set)
	review_results: dict[str, str] = field(default_factory=dict)
	attempts: int = 0
	started_at: str | None = None
	completed_at: str | None = None
	error: str = ""
	merge_error: str = ""
	evidence_path: str = ""
	halted_reason: str = ""

	def to_dict(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"title": self.title,
			"description": self.description,
			"status": self.status.value,
			"phase": self.phase,
			"depends_on": list(self.depends_on),
			"role": self.role.value,
			"risk_flags": sorted(f.value for f in self.risk_flags),
			"checkpoint": self.checkpoint,
			"checkpoint_message": self.checkpoint_message,
			"checkpoint_approved": self.checkpoint_approved,
			"context_sources": list(self.context_sources),
			"files_hint": list(self.files_hint),
			"worker_index": self.worker_index,
			"git_branch": self.git_branch,
			"merged": self.merged,
			"reviewed_by": sorted(r.value for r in self.reviewed_by),
			"review_results": dict(self.review_results),
			"attempts": self.attempts,
			"started_at": self.started_at,
			"completed_at": self.completed_at,
			"error": self.error,
			"merge_error": self.merge_error,
			"evidence_path": self.evidence_path,
			"halted_reason": self.halted_reason,
		}

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> WorkItem:
		"""Build a WorkItem from its persisted form.

		Raises ValueError for unknown status, role or risk category values.
		"""
		item = cls(id=str(data["id"]))
		item.title = str(data.get("title", ""))
		item.description = str(data.get("description", ""))
		item.status = ItemStatus(data.get("status", ItemStatus.READY.value))
		item.phase = int(data.get("phase", 1))
		item.depends_on = [str(d) for d in data.get("depends_on", [])]
		item.role = Role(data.get("role", Role.IMPLEMENTER.value))
		item.risk_flags = {RiskCategory(f) for f in data.get("risk_flags", [])}
		item.checkpoint = bool(data.get("checkpoint", False))
		item.checkpoint_message = str(data.get("checkpoint_message") or "")
		item.checkpoint_approved = bool(data.get("checkpoint_approved", False))
		item.context_sources = [str(s) for s in data.get("context_sources", [])]
		item.files_hint = [str(s) for s in data.get("files_hint", [])]
		worker_index = data.get("worker_index")
		item.worker_index = int(worker_index) if worker_index is not None else None
		item.git_branch = str(data.get("git_branch") or "")
		item.merged = bool(data.get("merged", False))
		item.reviewed_by = {Role(r) for r in data.get("reviewed_by", [])}
		item.review_results = {str(k): str(v) for k, v in data.get("review_results", {}).items()}
		item.attempts = int(data.get("attempts", 0))
		item.started_at = data.get("started_at")
		item.completed_at = data.get("completed_at")
		item.error = str(data.get("error") or "")
		item.merge_error = str(data.get("merge_error") or "")
		item.evidence_path = str(data.get("evidence_path") or "")
		item.halted_reason = str(data.get("halted_reason") or "")
		return item


@dataclass
class HealthAlert:
	"""Advisory alert raised by the health patrol."""

	level: str = "warning"  # warning/red
	category: str = ""  # test_failure_loop/edit_thrashing/worker_timeout/slow_progress
	objective_id: str = ""
	message: str = ""
	timestamp: str = field(default_factory=_now_iso)

	@property
	def is_red(self) -> bool:
		return self.level == "red"

	def to_dict(self) -> dict[str, Any]:
		return {
			"level": self.level,
			"category": self.category,
			"objective_id": self.objective_id,
			"message": self.message,
			"timestamp": self.timestamp,
		}


@dataclass
class Mission:
	"""One task decomposition executed against one repository."""

	id: str = ""
	repo: str = ""
	description: str = ""
	default_branch: str = "main"
	integration_branch: str = ""
	status: MissionStatus = MissionStatus.PLANNING
	status_message: str = ""
	work_items: list[WorkItem] = field(default_factory=list)
	session_log: list[SessionLogEntry] = field(default_factory=list)
	safety: SafetyLimits = field(default_factory=SafetyLimits)
	pr: PullRequestRef | None = None
	project_commands: dict[str, str] = field(default_factory=dict)
	notify_channel: str = ""
	notify_thread: str = ""
	version: int = 0
	created_at: str = field(default_factory=_now_iso)
	updated_at: str = field(default_factory=_now_iso)

	@property
	def is_terminal(self) -> bool:
		return self.status.is_terminal

	def get_item(self, item_id: str) -> WorkItem | None:
		for item in self.work_items:
			if item.id == item_id:
				return item
		return None

	def items_with_status(self, status: ItemStatus) -> list[WorkItem]:
		return [i for i in self.work_items if i.status == status]

	def get_ready_items(self) -> list[WorkItem]:
		return get_ready_items(self.work_items)

	def progress(self) -> tuple[int, int, int]:
		"""Return (done, total, percent) over work items."""
		total = len(self.work_items)
		done = len(self.items_with_status(ItemStatus.DONE))
		percent = round(done / total * 100) if total else 0
		return done, total, percent

	def to_dict(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"repo": self.repo,
			"description": self.description,
			"default_branch": self.default_branch,
			"integration_branch": self.integration_branch,
			"status": self.status.value,
			"status_message": self.status_message,
			"work_items": [i.to_dict() for i in self.work_items],
			"session_log": [e.to_dict() for e in self.session_log],
			"safety": self.safety.to_dict(),
			"pr": self.pr.to_dict() if self.pr else None,
			"project_commands": dict(self.project_commands),
			"notify_channel": self.notify_channel,
			"notify_thread": self.notify_thread,
			"version": self.version,
			"created_at": self.created_at,
			"updated_at": self.updated_at,
		}

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> Mission:
		pr_data = data.get("pr")
		return cls(
			id=str(data["id"]),
			repo=str(data.get("repo", "")),
			description=str(data.get("description", "")),
			default_branch=str(data.get("default_branch", "main")),
			integration_branch=str(data.get("integration_branch", "")),
			status=MissionStatus(data.get("status", MissionStatus.PLANNING.value)),
			status_message=str(data.get("status_message", "")),
			work_items=[WorkItem.from_dict(i) for i in data.get("work_items", [])],
			session_log=[SessionLogEntry.from_dict(e) for e in data.get("session_log", [])],
			safety=SafetyLimits.from_dict(data.get("safety", {})),
			pr=PullRequestRef.from_dict(pr_data) if pr_data else None,
			project_commands={str(k): str(v) for k, v in data.get("project_commands", {}).items()},
			notify_channel=str(data.get("notify_channel", "")),
			notify_thread=str(data.get("notify_thread", "")),
			version=int(data.get("version", 0)),
			created_at=str(data.get("created_at", "")),
			updated_at=str(data.get("updated_at", "")),
		)


def get_ready_items(items: list[WorkItem]) -> list[WorkItem]:
	"""Items whose status is ready and whose dependencies are all done.

	A dependency id that does not resolve to any item never counts as done.
	"""
	done_ids = {i.id for i in items if i.status == ItemStatus.DONE}
	return [
		i for i in items
		if i.status == ItemStatus.READY and all(dep in done_ids for dep in i.depends_on)
	]
