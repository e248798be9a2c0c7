"""Health patrol -- detects stalled, looping and thrashing workers.

Every ``interval`` seconds the patrol inspects each in-progress work item of
each in-progress mission through its worktree's git history:

- inactivity, measured from the later of the worker's start and its last commit
- consecutive identical test failures reported while the worker runs
- thrashing: one file touched more than ``thrash_threshold`` times in the
  last ``thrash_window`` commits

Repeated failures and thrashing raise a red alert and halt the objective so
the scheduler stops dispatching it. Long inactivity raises a red
``worker_timeout``; moderate inactivity a ``slow_progress`` warning. Alerts
never change work item status.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from commanddeck.config import HealthConfig
from commanddeck.gitutil import run_git
from commanddeck.models import HealthAlert, ItemStatus, Mission, MissionStatus, WorkItem, parse_iso
from commanddeck.observability import log_event, persist_health_alert
from commanddeck.store import MissionClosedError, MissionNotFound

if TYPE_CHECKING:
	from commanddeck.collaborators import Notifier
	from commanddeck.store import MissionStore
	from commanddeck.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

NO_ACTIVITY_MINUTES = 999.0


class HealthTracker:
	"""Process-lifetime failure counters and halted objectives, keyed by (mission, objective)."""

	def __init__(self) -> None:
		self._failures: dict[tuple[str, str], tuple[str, int]] = {}
		self._halted: dict[tuple[str, str], str] = {}

	def record_test_failure(self, mission_id: str, objective_id: str, test_id: str) -> int:
		"""Record a failing test; returns how many times in a row this same test has failed."""
		key = (mission_id, objective_id)
		last_test, count = self._failures.get(key, ("", 0))
		count = count + 1 if last_test == test_id else 1
		self._failures[key] = (test_id, count)
		return count

	def failure_count(self, mission_id: str, objective_id: str) -> int:
		return self._failures.get((mission_id, objective_id), ("", 0))[1]

	def halt(self, mission_id: str, objective_id: str, reason: str) -> None:
		self._halted[(mission_id, objective_id)] = reason

	def is_halted(self, mission_id: str, objective_id: str) -> bool:
		return (mission_id, objective_id) in self._halted

	def halted_objectives(self, mission_id: str) -> dict[str, str]:
		return {obj: reason for (mid, obj), reason in self._halted.items() if mid == mission_id}

	def reset(self, mission_id: str, objective_id: str) -> None:
		"""Forget counters and halt state for an objective (on retry or completion)."""
		self._failures.pop((mission_id, objective_id), None)
		self._halted.pop((mission_id, objective_id), None)

	def clear(self) -> None:
		self._failures.clear()
		self._halted.clear()


def halted_objectives(mission: Mission, tracker: HealthTracker) -> dict[str, str]:
	"""Halted objectives of a mission: those recorded on its items plus live halts in ``tracker``."""
	halted = {item.id: item.halted_reason for item in mission.work_items if item.halted_reason}
	halted.update(tracker.halted_objectives(mission.id))
	return halted


@dataclass
class HealthReport:
	"""Result of one patrol over one mission."""

	mission_id: str = ""
	workers: list[dict[str, Any]] = field(default_factory=list)
	alerts: list[HealthAlert] = field(default_factory=list)

	@property
	def healthy(self) -> bool:
		return not any(a.is_red for a in self.alerts)


async def last_commit_time(workspace: Path) -> datetime | None:
	ok, out = await run_git(workspace, "log", "-1", "--format=%cI")
	if not ok or not out.strip():
		return None
	try:
		return parse_iso(out.strip())
	except ValueError:
		return None


def inactivity_minutes(
	started_at: str | None,
	last_commit: datetime | None,
	now: datetime | None = None,
) -> float:
	"""Minutes since the later of worker start and last commit."""
	now = now or datetime.now(timezone.utc)
	candidates: list[datetime] = []
	if started_at:
		try:
			candidates.append(parse_iso(started_at))
		except ValueError:
			logger.warning("Unparseable started_at %r", started_at)
	if last_commit is not None:
		candidates.append(last_commit)
	if not candidates:
		return NO_ACTIVITY_MINUTES
	return max(0.0, (now - max(candidates)).total_seconds() / 60.0)


async def file_touch_counts(workspace: Path, window: int) -> Counter[str]:
	ok, out = await run_git(workspace, "log", "--name-only", "--format=", f"-{window}")
	if not ok:
		return Counter()
	return Counter(line.strip() for line in out.splitlines() if line.strip())


class HealthPatrol:
	"""Periodic inspection of active workspaces."""

	def __init__(
		self,
		store: MissionStore,
		workspaces: WorkspaceManager,
		tracker: HealthTracker,
		config: HealthConfig | None = None,
		notifier: Notifier | None = None,
	) -> None:
		self.store = store
		self.workspaces = workspaces
		self.tracker = tracker
		self.config = config or HealthConfig()
		self.notifier = notifier

	async def minutes_inactive(self, workspace: Path, started_at: str | None, now: datetime | None = None) -> float:
		return inactivity_minutes(started_at, await last_commit_time(workspace), now)

	async def check_item(
		self, mission: Mission, item: WorkItem, now: datetime | None = None,
	) -> tuple[dict[str, Any], list[HealthAlert]]:
		"""Inspect one in-progress item. Returns (worker summary, alerts)."""
		cfg = self.config
		slot = item.worker_index if item.worker_index is not None else -1
		path = self.workspaces.workspace_path(mission.repo, slot)
		worker: dict[str, Any] = {"objective_id": item.id, "slot": slot, "workspace": str(path)}
		alerts: list[HealthAlert] = []

		if item.halted_reason or self.tracker.is_halted(mission.id, item.id):
			worker["status"] = "halted"
			return worker, alerts

		failures = self.tracker.failure_count(mission.id, item.id)
		worker["test_failures"] = failures
		if failures >= cfg.failure_threshold:
			alerts.append(HealthAlert(
				level="red",
				category="test_failure_loop",
				objective_id=item.id,
				message=f"{item.id}: same test failed {failures} times in a row. Stop-the-line: operator guidance needed.",
			))
			await self._halt(mission, item, "test_failure_loop")
			worker["status"] = "halted"
			return worker, alerts

		if not path.exists():
			worker["status"] = "missing_workspace"
			return worker, alerts

		touches = await file_touch_counts(path, cfg.thrash_window)
		thrashing = sorted(f for f, n in touches.items() if n > cfg.thrash_threshold)
		if thrashing:
			alerts.append(HealthAlert(
				level="red",
				category="edit_thrashing",
				objective_id=item.id,
				message=f"{item.id}: edit thrashing on {', '.join(thrashing[:5])}. Stop-the-line: operator guidance needed.",
			))
			await self._halt(mission, item, "edit_thrashing")
			worker["status"] = "halted"
			return worker, alerts

		minutes = await self.minutes_inactive(path, item.started_at, now)
		worker["minutes_inactive"] = round(minutes, 1)
		if minutes > cfg.red_minutes:
			alerts.append(HealthAlert(
				level="red",
				category="worker_timeout",
				objective_id=item.id,
				message=f"{item.id}: no activity for {minutes:.0f} min, worker appears stuck",
			))
			worker["status"] = "stuck"
		elif minutes > cfg.warning_minutes:
			alerts.append(HealthAlert(
				level="warning",
				category="slow_progress",
				objective_id=item.id,
				message=f"{item.id}: no commits for {minutes:.0f} min",
			))
			worker["status"] = "slow"
		else:
			worker["status"] = "active"
		return worker, alerts

	async def _halt(self, mission: Mission, item: WorkItem, reason: str) -> None:
		"""Halt an objective here and record it on the item so other processes see it too."""
		self.tracker.halt(mission.id, item.id, reason)
		try:
			await self.store.update_item(mission.repo, mission.id, item.id, halted_reason=reason)
		except (MissionNotFound, MissionClosedError, KeyError) as exc:
			logger.warning("Could not record halt of %s in %s: %s", item.id, mission.id, exc)

	async def patrol(self, mission: Mission, now: datetime | None = None) -> HealthReport:
		"""Inspect every in-progress item that holds a worker slot."""
		report = HealthReport(mission_id=mission.id)
		for item in mission.items_with_status(ItemStatus.IN_PROGRESS):
			if item.worker_index is None:
				continue
			worker, alerts = await self.check_item(mission, item, now)
			report.workers.append(worker)
			report.alerts.extend(alerts)

		for alert in report.alerts:
			await self._raise(mission, alert)
		return report

	async def _raise(self, mission: Mission, alert: HealthAlert) -> None:
		log_event(
			"health.alert", mission_id=mission.id, level=alert.level,
			category=alert.category, objective_id=alert.objective_id,
		)
		try:
			persist_health_alert(self.store.health_alerts_path(mission.repo, mission.id), alert, mission.id)
		except OSError as exc:
			logger.warning("Could not persist health alert for %s: %s", mission.id, exc)
		if self.notifier is not None:
			prefix = "RED ALERT" if alert.is_red else "Warning"
			try:
				await self.notifier.post(f"{prefix} [{mission.id}] {alert.message}")
			except Exception as exc:
				logger.warning("Failed to send health notification: %s", exc)

	async def patrol_all(self, missions: list[Mission], now: datetime | None = None) -> list[HealthReport]:
		reports: list[HealthReport] = []
		for mission in missions:
			if mission.status != MissionStatus.IN_PROGRESS:
				continue
			try:
				reports.append(await self.patrol(mission, now))
			except Exception as exc:
				logger.error("Health patrol failed for %s: %s", mission.id, exc)
		return reports

	async def run(
		self,
		source: Callable[[], Awaitable[list[Mission]]],
		stop: asyncio.Event,
	) -> None:
		"""Patrol the missions ``source`` yields every ``interval`` seconds until ``stop`` is set."""
		logger.info("Health patrol started (interval %ds)", self.config.interval)
		while not stop.is_set():
			missions = await source()
			await self.patrol_all(missions)
			try:
				await asyncio.wait_for(stop.wait(), timeout=self.config.interval)
			except asyncio.TimeoutError:
				pass
		logger.info("Health patrol stopped")
