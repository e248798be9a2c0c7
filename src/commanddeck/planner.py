"""Planning agent: decomposes a mission into a dependency graph of work items."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from commanddeck.collaborators import Planner
from commanddeck.config import PlannerConfig
from commanddeck.jsonutil import extract_json
from commanddeck.models import ItemStatus, Mission, Role, WorkItem
from commanddeck.validate import ConfigurationError, validate_dependency_graph

if TYPE_CHECKING:
	from commanddeck.store import MissionStore
	from commanddeck.worker import AgentRunner

logger = logging.getLogger(__name__)

PLAN_SCHEMA_HINT = """{
  "work_items": [
    {
      "id": "obj-1",
      "title": "short imperative title",
      "description": "what to build and how to verify it",
      "phase": 1,
      "depends_on": [],
      "role": "implementer",
      "files_hint": ["src/app/module.py"],
      "context_sources": [],
      "checkpoint": false,
      "checkpoint_message": ""
    }
  ]
}"""


class PlanValidationError(ConfigurationError):
	"""The planner produced no usable plan."""


def parse_plan(data: Any) -> list[WorkItem]:
	"""Turn raw plan JSON (``{"work_items": [...]}`` or a bare list) into fresh work items.

	Raises:
		PlanValidationError: On malformed entries, unknown roles or risk categories.
	"""
	if isinstance(data, dict):
		data = data.get("work_items", data.get("objectives"))
	if not isinstance(data, list):
		raise PlanValidationError("Plan has no work_items list")
	items: list[WorkItem] = []
	for index, raw in enumerate(data):
		if not isinstance(raw, dict) or not raw.get("id"):
			raise PlanValidationError(f"Plan entry {index} has no id")
		raw = dict(raw)
		if "assigned_to" in raw and "role" not in raw:
			raw["role"] = raw.pop("assigned_to")
		try:
			item = WorkItem.from_dict(raw)
		except (ValueError, TypeError) as exc:
			raise PlanValidationError(f"Plan entry {raw.get('id')}: {exc}") from None
		if item.role == Role.HUMAN:
			raise PlanValidationError(f"Plan entry {item.id}: work cannot be assigned to the human role")
		# Runtime state always starts clean
		item.status = ItemStatus.READY
		item.worker_index = None
		item.git_branch = ""
		item.merged = False
		item.reviewed_by = set()
		item.review_results = {}
		item.attempts = 0
		item.checkpoint_approved = False
		item.halted_reason = ""
		items.append(item)
	return items


def validate_plan(items: list[WorkItem], max_items: int) -> None:
	"""Raises PlanValidationError for an empty, oversized or ill-formed plan."""
	if not items:
		raise PlanValidationError("Planner produced no work items")
	if len(items) > max_items:
		raise PlanValidationError(f"Planner produced {len(items)} work items (limit {max_items})")
	try:
		validate_dependency_graph(items)
	except ConfigurationError as exc:
		raise PlanValidationError(str(exc)) from None


def build_planner_prompt(mission: Mission, plan_path: Path, max_items: int) -> str:
	roles = ", ".join(r.value for r in Role if r not in (Role.HUMAN, Role.PLANNER, Role.CONFLICT_RESOLVER))
	return "\n".join([
		f"You are the {Role.PLANNER.value} for mission {mission.id} on repository {mission.repo}.",
		"",
		f"Task: {mission.description}",
		"",
		"Study the repository, then decompose the task into at most "
		f"{max_items} independently mergeable objectives.",
		"Each objective must be small enough for one agent session and touch a distinct set of files where possible.",
		"Use depends_on for ordering (ids must refer to other objectives; no cycles).",
		f"Valid roles: {roles}.",
		"Set checkpoint true on objectives a human must approve before they run.",
		"",
		f"Write the plan as JSON to {plan_path} using exactly this shape:",
		PLAN_SCHEMA_HINT,
		"Do not modify any repository files.",
	])


async def wait_for_plan_file(path: Path, timeout: float, interval: float) -> Any | None:
	"""Poll until ``path`` holds parseable JSON or ``timeout`` elapses."""
	deadline = time.monotonic() + timeout
	while True:
		if path.exists():
			try:
				return json.loads(path.read_text(encoding="utf-8"))
			except json.JSONDecodeError:
				pass  # still being written
		if time.monotonic() >= deadline:
			return None
		await asyncio.sleep(interval)


class AgentPlanner(Planner):
	"""Runs the planning agent and installs its plan into the store."""

	def __init__(
		self,
		runner: AgentRunner,
		store: MissionStore,
		config: PlannerConfig,
		repo_dir: Callable[[str], Path],
	) -> None:
		self.runner = runner
		self.store = store
		self.config = config
		self._repo_dir = repo_dir

	async def decompose(self, mission: Mission) -> None:
		plan_path = self.store.plan_path(mission.repo, mission.id)
		prompt = build_planner_prompt(mission, plan_path, self.config.max_work_items)
		result = await self.runner.run(
			prompt,
			self._repo_dir(mission.repo),
			agent=Role.PLANNER,
			mission=mission,
			objective_id="plan",
			model=self.config.model,
			timeout=self.config.timeout,
			stderr_path=self.store.artifacts_dir(mission.repo, mission.id) / "worker-stderr-planner.log",
			allowed_tools=["Read", "Glob", "Grep", "Write"],
		)
		if not result.success:
			raise PlanValidationError(f"Planning agent failed: {result.error}")

		data = await wait_for_plan_file(plan_path, self.config.flush_timeout, self.config.flush_interval)
		if data is None:
			data = extract_json(result.stdout)
			if data is None:
				raise PlanValidationError("Planning agent produced no plan")
			plan_path.write_text(json.dumps(data, indent=2), encoding="utf-8")

		items = parse_plan(data)
		validate_plan(items, self.config.max_work_items)
		await self.store.replace_items(mission.repo, mission.id, items)
		logger.info("Installed plan for %s: %d work items", mission.id, len(items))
