"""Mission scheduler -- the state machine that drives a mission to a pull request.

States::

	planning -> pending_approval -> in_progress <-> checkpoint_paused
	                                     |
	                                  merging -> review -> completed
	side states: failed, aborted (terminal), paused (safety limit / halted work)

Each pass of ``run_loop`` re-reads the mission, dispatches at most one batch
of ready work items to isolated worktrees, waits for the whole batch, merges
what finished, runs owed specialist reviews, and goes round again. Collaborator
failures become mission facts (item or mission status plus a message); only
store and configuration errors escape as exceptions.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from commanddeck.collaborators import WorkerResult
from commanddeck.evidence import build_pr_body, read_all_evidence
from commanddeck.health import halted_objectives
from commanddeck.models import (
	ItemStatus,
	Mission,
	MissionStatus,
	PullRequestRef,
	RiskCategory,
	SafetyLimits,
	SessionLogEntry,
	WorkItem,
	_now_iso,
)
from commanddeck.observability import log_event
from commanddeck.planner import PlanValidationError, validate_plan
from commanddeck.pr import delete_mission_branches
from commanddeck.report import format_failure_inventory, format_plan, format_status
from commanddeck.review import pending_reviews
from commanddeck.risk import requires_human
from commanddeck.store import MissionClosedError
from commanddeck.validate import ConfigurationError, validate_repo_name
from commanddeck.workspace import WorkspaceError

if TYPE_CHECKING:
	from commanddeck.collaborators import Notifier, Planner, PullRequestProvider, Reviewer, Worker
	from commanddeck.config import CommandDeckConfig
	from commanddeck.health import HealthTracker
	from commanddeck.merger import IntegrationMerger
	from commanddeck.registry import MissionRegistry
	from commanddeck.risk import RiskClassifier
	from commanddeck.store import MissionStore
	from commanddeck.workspace import WorkspaceManager

logger = logging.getLogger(__name__)


class MissionStateError(RuntimeError):
	"""An operator action is not valid in the mission's current state."""


@dataclass
class ItemOutcome:
	"""Result of running one item of a batch."""

	item_id: str = ""
	success: bool = False
	error: str = ""


def item_branch(mission_id: str, item_id: str) -> str:
	return f"commanddeck/{mission_id}/{item_id}"


class MissionScheduler:
	"""Drives missions through planning, execution, merging and PR hand-off."""

	def __init__(
		self,
		config: CommandDeckConfig,
		store: MissionStore,
		workspaces: WorkspaceManager,
		merger: IntegrationMerger,
		classifier: RiskClassifier,
		planner: Planner,
		worker: Worker,
		reviewer: Reviewer,
		pr_provider: PullRequestProvider,
		notifier: Notifier,
		tracker: HealthTracker,
		registry: MissionRegistry,
	) -> None:
		self.config = config
		self.store = store
		self.workspaces = workspaces
		self.merger = merger
		self.classifier = classifier
		self.planner = planner
		self.worker = worker
		self.reviewer = reviewer
		self.pr_provider = pr_provider
		self.notifier = notifier
		self.tracker = tracker
		self.registry = registry

	# -- helpers --

	async def _notify(self, text: str) -> None:
		try:
			await self.notifier.post(text)
		except Exception as exc:
			logger.warning("Notification failed: %s", exc)

	async def _transition(self, repo: str, mission_id: str, status: MissionStatus, message: str = "") -> Mission:
		mission = await self.store.set_status(repo, mission_id, status, message)
		self.store.append_activity_log(
			repo, mission_id, f"Status -> {status.value}" + (f": {message}" if message else ""),
		)
		logger.info("Mission %s -> %s %s", mission_id, status.value, message)
		return mission

	async def _fail(self, repo: str, mission_id: str, message: str) -> Mission:
		mission = await self._transition(repo, mission_id, MissionStatus.FAILED, message)
		await self._notify(format_failure_inventory(mission))
		try:
			await self.workspaces.release_all(repo)
		except (OSError, ConfigurationError) as exc:
			logger.warning("Worktree cleanup after failure of %s failed: %s", mission_id, exc)
		return mission

	# -- planning --

	async def start(
		self,
		repo: str,
		description: str,
		*,
		auto_approve: bool = True,
		notify_channel: str = "",
		notify_thread: str = "",
	) -> Mission:
		"""Create a mission, plan it, and (unless approval is required) run it.

		Raises:
			ConfigurationError: On an invalid repository name, before anything is written.
		"""
		validate_repo_name(repo)
		project = self.config.project(repo)
		default_branch = project.default_branch or await self.workspaces.default_branch(repo)
		safety = SafetyLimits(
			max_sessions=project.max_sessions,
			max_elapsed_hours=project.max_elapsed_hours,
			max_parallel_workers=project.max_workers,
		)
		mission = await self.store.create(
			repo,
			description,
			default_branch=default_branch,
			safety=safety,
			project_commands=project.commands,
			notify_channel=notify_channel,
			notify_thread=notify_thread,
		)
		await self._notify(f"Mission {mission.id} created for {repo}: {description[:200]}")

		mission = await self.plan(repo, mission.id)
		if mission.status != MissionStatus.PENDING_APPROVAL:
			return mission
		if not auto_approve:
			await self._notify(f"{format_plan(mission)}\n\nApprove with: resume {mission.id}")
			return mission
		return await self.execute(repo, mission.id)

	async def _await_plan(self, repo: str, mission_id: str) -> Mission:
		"""Re-read until the planner's items are visible or the flush window closes."""
		cfg = self.config.planner
		deadline = time.monotonic() + cfg.flush_timeout
		mission = await self.store.get(repo, mission_id)
		while not mission.work_items and time.monotonic() < deadline:
			await asyncio.sleep(cfg.flush_interval)
			mission = await self.store.get(repo, mission_id)
		return mission

	async def plan(self, repo: str, mission_id: str) -> Mission:
		"""Run the planner and move to pending_approval, or fail the mission."""
		mission = await self.store.get(repo, mission_id)
		if mission.status != MissionStatus.PLANNING:
			raise MissionStateError(f"Mission {mission_id} is {mission.status.value}, not planning")
		try:
			await self.planner.decompose(mission)
		except Exception as exc:
			logger.error("Planner failed for %s: %s", mission_id, exc)
			return await self._fail(repo, mission_id, f"planning failed: {exc}")

		mission = await self._await_plan(repo, mission_id)
		try:
			validate_plan(mission.work_items, self.config.planner.max_work_items)
		except PlanValidationError as exc:
			return await self._fail(repo, mission_id, str(exc))

		await self._classify(repo, mission_id, mission.work_items)
		mission = await self._transition(repo, mission_id, MissionStatus.PENDING_APPROVAL)
		await self._notify(format_plan(mission))
		return mission

	async def execute(self, repo: str, mission_id: str) -> Mission:
		"""Run an approved plan: prepare the integration branch and enter the main loop."""
		mission = await self.store.get(repo, mission_id)
		if mission.status != MissionStatus.PENDING_APPROVAL:
			raise MissionStateError(f"Mission {mission_id} is {mission.status.value}, not pending_approval")
		try:
			await self.merger.ensure_integration_branch(mission)
		except (RuntimeError, ConfigurationError, OSError) as exc:
			return await self._fail(repo, mission_id, f"could not prepare integration branch: {exc}")
		await self._transition(repo, mission_id, MissionStatus.IN_PROGRESS)
		await self._notify(f"Mission {mission_id} approved; starting work on {len(mission.work_items)} objectives")
		return await self.run_loop(repo, mission_id)

	# -- risk --

	async def _classify(self, repo: str, mission_id: str, items: list[WorkItem]) -> None:
		"""Merge classifier findings into risk flags; any item whose flags need a human becomes a checkpoint."""
		found: dict[str, set[RiskCategory]] = {}
		for item in items:
			flags = item.risk_flags | self.classifier.classify(item, repo)
			if flags != item.risk_flags or (requires_human(flags) and not item.checkpoint):
				found[item.id] = flags
		if not found:
			return

		def _apply(m: Mission) -> None:
			for item_id, flags in found.items():
				target = m.get_item(item_id)
				if target is None:
					continue
				target.risk_flags |= flags
				if requires_human(target.risk_flags) and not target.checkpoint:
					target.checkpoint = True
					names = ", ".join(sorted(f.value for f in target.risk_flags))
					target.checkpoint_message = f"Human review required before running ({names})"

		await self.store.mutate(repo, mission_id, _apply)
		for item_id, flags in found.items():
			logger.info("Risk flags for %s: %s", item_id, ", ".join(sorted(f.value for f in flags)))

	# -- main loop --

	async def run_loop(self, repo: str, mission_id: str) -> Mission:
		"""Schedule batches until the mission leaves in_progress.

		Raises:
			MissionBusyError: If this process is already driving the mission.
		"""
		with self.registry.claim(repo, mission_id):
			try:
				return await self._drive(repo, mission_id)
			except MissionClosedError:
				logger.info("Mission %s was closed while running; stopping", mission_id)
				return await self.store.get(repo, mission_id)

	async def _drive(self, repo: str, mission_id: str) -> Mission:
		while True:
			mission = await self.store.get(repo, mission_id)
			if mission.status != MissionStatus.IN_PROGRESS:
				return mission

			reason = mission.safety.exceeded()
			if reason:
				mission = await self._transition(repo, mission_id, MissionStatus.PAUSED, reason)
				await self._notify(f"Mission {mission_id} paused: {reason}. Raise the limits to continue.")
				return mission

			ready = mission.get_ready_items()
			in_progress = mission.items_with_status(ItemStatus.IN_PROGRESS)
			if not ready and not in_progress:
				if mission.items_with_status(ItemStatus.FAILED):
					return await self._fail(repo, mission_id, "work items failed and nothing else can run")
				blocked = [i for i in mission.work_items if i.status != ItemStatus.DONE]
				if blocked:
					return await self._fail(
						repo, mission_id,
						f"{len(blocked)} work items can never become ready",
					)
				await self._transition(repo, mission_id, MissionStatus.MERGING)
				return await self._finish(repo, mission_id)
			if not ready:
				logger.warning(
					"Mission %s has %d in-progress items but none ready; waiting for recovery",
					mission_id, len(in_progress),
				)
				return mission

			await self._classify(repo, mission_id, ready)
			mission = await self.store.get(repo, mission_id)
			ready = mission.get_ready_items()

			checkpoint = next((i for i in ready if i.checkpoint and not i.checkpoint_approved), None)
			if checkpoint is not None:
				return await self._pause_at_checkpoint(repo, mission_id, checkpoint)

			halted = halted_objectives(mission, self.tracker)
			dispatchable = [i for i in ready if i.id not in halted]
			if not dispatchable:
				names = ", ".join(f"{k} ({v})" for k, v in sorted(halted.items()))
				mission = await self._transition(
					repo, mission_id, MissionStatus.PAUSED, f"halted objectives need operator guidance: {names}",
				)
				await self._notify(f"Mission {mission_id} paused. Halted: {names}. Retry an objective to continue.")
				return mission

			size = min(mission.safety.max_parallel_workers, mission.safety.remaining_sessions)
			await self._execute_batch(repo, mission_id, dispatchable[:max(1, size)])

			mission = await self.store.get(repo, mission_id)
			await self.merger.merge_completed(mission)
			await self.run_mandatory_reviews(repo, mission_id)

	async def _pause_at_checkpoint(self, repo: str, mission_id: str, item: WorkItem) -> Mission:
		def _pause(m: Mission) -> None:
			target = m.get_item(item.id)
			if target is not None:
				target.status = ItemStatus.CHECKPOINT_PAUSED
			m.status = MissionStatus.CHECKPOINT_PAUSED
			m.status_message = f"checkpoint at {item.id}"

		mission = await self.store.mutate(repo, mission_id, _pause)
		self.store.append_activity_log(repo, mission_id, f"Checkpoint reached at {item.id}")
		log_event("mission.status", mission_id=mission_id, status=MissionStatus.CHECKPOINT_PAUSED.value)
		message = item.checkpoint_message or "approval required"
		await self._notify(
			f"Checkpoint in {mission_id} at {item.id} ({item.title}): {message}\n"
			f"Approve with: resume {mission_id}"
		)
		return mission

	async def _execute_batch(self, repo: str, mission_id: str, batch: list[WorkItem]) -> list[ItemOutcome]:
		"""Dispatch a batch concurrently and wait for every item to finish."""
		started = _now_iso()

		def _claim(m: Mission) -> None:
			for slot, item in enumerate(batch):
				target = m.get_item(item.id)
				if target is None:
					continue
				target.status = ItemStatus.IN_PROGRESS
				target.worker_index = slot
				target.git_branch = item_branch(mission_id, item.id)
				target.started_at = started
				target.completed_at = None
				target.error = ""
				target.attempts += 1

		mission = await self.store.mutate(repo, mission_id, _claim)
		await self._notify(
			f"Dispatching {len(batch)} objective(s) in {mission_id}: " + ", ".join(i.id for i in batch)
		)
		items = [mission.get_item(i.id) for i in batch]
		results = await asyncio.gather(
			*(self._run_item(mission, item, slot) for slot, item in enumerate(items) if item is not None),
			return_exceptions=True,
		)
		outcomes: list[ItemOutcome] = []
		for result in results:
			if isinstance(result, BaseException):
				raise result
			outcomes.append(result)
		return outcomes

	async def _run_item(self, mission: Mission, item: WorkItem, slot: int) -> ItemOutcome:
		repo = mission.repo
		outcome = ItemOutcome(item_id=item.id)
		try:
			try:
				path = await self.workspaces.provision(repo, slot, item.git_branch, mission.integration_branch)
			except (WorkspaceError, ConfigurationError, OSError) as exc:
				outcome.error = f"workspace provisioning failed: {exc}"
				await self._record_item(mission, item, outcome, None)
				return outcome

			mission = await self.store.increment_session_count(repo, mission.id)
			entry = SessionLogEntry(agent=item.role.value, objective_id=item.id)
			try:
				result = await self.worker.execute(path, item, mission)
			except Exception as exc:
				logger.error("Worker for %s raised: %s", item.id, exc)
				result = WorkerResult(success=False, stderr=str(exc))
			entry.ended_at = datetime.now(timezone.utc).isoformat()
			entry.exit_code = result.exit_code

			outcome.success = result.success
			outcome.error = "" if result.success else result.error
			await self._record_item(mission, item, outcome, entry)
			if result.auth_failure:
				hint = f" Authenticate at {result.auth_url}" if result.auth_url else ""
				await self._notify(f"Agent authentication required for {mission.id}/{item.id}.{hint}")
			return outcome
		finally:
			try:
				await self.workspaces.release(repo, slot)
			except (OSError, ConfigurationError) as exc:
				logger.warning("Releasing slot %d of %s failed: %s", slot, repo, exc)

	async def _record_item(
		self,
		mission: Mission,
		item: WorkItem,
		outcome: ItemOutcome,
		entry: SessionLogEntry | None,
	) -> None:
		evidence = self.store.evidence_path(mission.repo, mission.id, item.id)

		def _record(m: Mission) -> None:
			if entry is not None:
				m.session_log.append(entry)
			target = m.get_item(item.id)
			if target is None:
				return
			target.worker_index = None
			target.completed_at = _now_iso()
			if outcome.success:
				target.status = ItemStatus.DONE
				target.error = ""
				target.halted_reason = ""
				target.evidence_path = str(evidence)
			else:
				target.status = ItemStatus.FAILED
				target.error = outcome.error

		await self.store.mutate(mission.repo, mission.id, _record)
		status = "done" if outcome.success else "failed"
		detail = f": {outcome.error[:200]}" if outcome.error else ""
		self.store.append_activity_log(mission.repo, mission.id, f"{item.id} {status}{detail}")
		if outcome.success:
			self.tracker.reset(mission.id, item.id)
		else:
			await self._notify(f"Objective {item.id} in {mission.id} failed: {outcome.error[:300]}")

	# -- reviews --

	async def run_mandatory_reviews(self, repo: str, mission_id: str) -> int:
		"""Run every owed (role, item) review once. Returns how many reviews were run."""
		mission = await self.store.get(repo, mission_id)
		ran = 0
		for item, role in pending_reviews(mission):
			claimed = False

			def _claim(m: Mission, item_id: str = item.id, role=role) -> None:
				nonlocal claimed
				target = m.get_item(item_id)
				if target is None or role in target.reviewed_by:
					return
				target.reviewed_by.add(role)
				m.safety.session_count += 1
				claimed = True

			mission = await self.store.mutate(repo, mission_id, _claim)
			if not claimed:
				continue
			entry = SessionLogEntry(agent=role.value, objective_id=item.id)
			try:
				result = await self.reviewer.review(role, item, mission)
			except Exception as exc:
				logger.error("Review %s of %s raised: %s", role.value, item.id, exc)
				result = WorkerResult(success=False, stderr=str(exc))
			verdict = result.verdict or ("passed" if result.success else "issues")
			entry.ended_at = datetime.now(timezone.utc).isoformat()
			entry.exit_code = result.exit_code

			def _result(m: Mission, item_id: str = item.id, role=role, verdict: str = verdict) -> None:
				target = m.get_item(item_id)
				if target is not None:
					target.review_results[role.value] = verdict
				m.session_log.append(entry)

			mission = await self.store.mutate(repo, mission_id, _result)
			ran += 1
			self.store.append_activity_log(repo, mission_id, f"Review {role.value} of {item.id}: {verdict}")
			if verdict != "passed":
				await self._notify(f"{role.value} flagged issues on {item.id} in {mission_id}")
		return ran

	# -- merging / hand-off --

	async def _finish(self, repo: str, mission_id: str) -> Mission:
		mission = await self.store.get(repo, mission_id)
		if any(i.status == ItemStatus.DONE and not i.merged for i in mission.work_items):
			await self.merger.merge_completed(mission)
			mission = await self.store.get(repo, mission_id)
		unmerged = [i for i in mission.work_items if i.status == ItemStatus.DONE and not i.merged]
		if unmerged:
			return await self._fail(
				repo, mission_id,
				"unresolved merge conflicts: " + ", ".join(i.id for i in unmerged),
			)

		body = build_pr_body(mission, read_all_evidence(self.store.artifacts_dir(repo, mission_id)))
		try:
			info = await self.pr_provider.create_pull_request(mission, body)
		except Exception as exc:
			logger.error("PR creation failed for %s: %s", mission_id, exc)
			return await self._fail(repo, mission_id, f"pull request creation failed: {exc}")

		def _review(m: Mission) -> None:
			m.pr = PullRequestRef(number=info.number, url=info.url, state="open")
			m.status = MissionStatus.REVIEW
			m.status_message = ""

		mission = await self.store.mutate(repo, mission_id, _review)
		self.store.append_activity_log(repo, mission_id, f"PR opened: {info.url}")
		log_event("mission.status", mission_id=mission_id, status=MissionStatus.REVIEW.value, pr=info.url)
		await self._notify(
			f"Mission {mission_id} complete. PR ready for review: {info.url}\n"
			f"{len(mission.work_items)} objectives merged."
		)
		try:
			await self.workspaces.release_all(repo)
		except (OSError, ConfigurationError) as exc:
			logger.warning("Worktree cleanup for %s failed: %s", mission_id, exc)
		return mission

	async def finalize(self, repo: str, mission_id: str) -> Mission:
		"""Close out a mission in review once its PR is merged (completed) or closed (aborted)."""
		mission = await self.store.get(repo, mission_id)
		if mission.status != MissionStatus.REVIEW:
			raise MissionStateError(f"Mission {mission_id} is {mission.status.value}, not review")
		state = await self.pr_provider.pull_request_state(mission)
		if state == "merged":
			await self.workspaces.release_all(repo)
			await delete_mission_branches(self.workspaces.repo_path(repo), mission)

			def _complete(m: Mission) -> None:
				if m.pr is not None:
					m.pr.state = "merged"
				m.status = MissionStatus.COMPLETED
				m.status_message = "pull request merged"

			mission = await self.store.mutate(repo, mission_id, _complete)
			await self._notify(f"Mission {mission_id}: PR merged, branches cleaned up.")
		elif state == "closed":
			def _closed(m: Mission) -> None:
				if m.pr is not None:
					m.pr.state = "closed"
				m.status = MissionStatus.ABORTED
				m.status_message = "pull request closed without merging"

			mission = await self.store.mutate(repo, mission_id, _closed)
			await self._notify(f"Mission {mission_id}: PR closed without merging.")
		else:
			body = build_pr_body(mission, read_all_evidence(self.store.artifacts_dir(repo, mission_id)))
			if await self.pr_provider.update_pull_request(mission, body):
				logger.info("PR for %s is %s; description refreshed", mission_id, state)
			else:
				logger.info("PR for %s is %s; nothing to finalize", mission_id, state)
		return mission

	# -- operator actions --

	async def resume(self, repo: str, mission_id: str) -> Mission:
		"""Approve a checkpoint (re-arming the paused item) or a pending plan, and continue.

		Raises:
			MissionStateError: From any state other than checkpoint_paused or pending_approval.
		"""
		mission = await self.store.get(repo, mission_id)
		if mission.status == MissionStatus.PENDING_APPROVAL:
			return await self.execute(repo, mission_id)
		if mission.status != MissionStatus.CHECKPOINT_PAUSED:
			raise MissionStateError(
				f"Cannot resume {mission_id} from {mission.status.value}; "
				"only checkpoint_paused or pending_approval missions can be resumed"
			)

		rearmed: list[str] = []

		def _rearm(m: Mission) -> None:
			if m.status != MissionStatus.CHECKPOINT_PAUSED:
				raise MissionStateError(f"Mission {mission_id} changed state to {m.status.value}")
			for item in m.items_with_status(ItemStatus.CHECKPOINT_PAUSED):
				item.status = ItemStatus.READY
				item.checkpoint_approved = True
				rearmed.append(item.id)
			m.status = MissionStatus.IN_PROGRESS
			m.status_message = ""

		await self.store.mutate(repo, mission_id, _rearm)
		self.store.append_activity_log(repo, mission_id, f"Checkpoint approved: {', '.join(rearmed)}")
		log_event("mission.status", mission_id=mission_id, status=MissionStatus.IN_PROGRESS.value)
		await self._notify(f"Mission {mission_id} resumed; approved {', '.join(rearmed)}")
		return await self.run_loop(repo, mission_id)

	async def recover(self, repo: str, mission_id: str) -> Mission:
		"""Re-enter the loop after a crash, treating leftover in_progress items as never started."""
		mission = await self.store.get(repo, mission_id)
		if mission.status not in (MissionStatus.IN_PROGRESS, MissionStatus.MERGING):
			raise MissionStateError(f"Mission {mission_id} is {mission.status.value}; nothing to recover")
		if self.registry.is_active(mission_id):
			raise MissionStateError(f"Mission {mission_id} is running in this process")

		await self.workspaces.release_all(repo)
		reset: list[str] = []

		def _reset(m: Mission) -> None:
			for item in m.items_with_status(ItemStatus.IN_PROGRESS):
				item.status = ItemStatus.READY
				item.worker_index = None
				reset.append(item.id)
			m.status = MissionStatus.IN_PROGRESS

		await self.store.mutate(repo, mission_id, _reset)
		if reset:
			logger.info("Recovered %s: reset %s to ready", mission_id, ", ".join(reset))
			self.store.append_activity_log(repo, mission_id, f"Recovered; reset {', '.join(reset)} to ready")
		return await self.run_loop(repo, mission_id)

	async def abort(self, repo: str, mission_id: str, reason: str = "aborted by operator") -> Mission:
		mission = await self.store.get(repo, mission_id)
		if mission.is_terminal:
			raise MissionStateError(f"Mission {mission_id} is already {mission.status.value}")
		if mission.pr is not None and mission.status == MissionStatus.REVIEW:
			await self.pr_provider.close_pull_request(mission)
		mission = await self._transition(repo, mission_id, MissionStatus.ABORTED, reason)
		try:
			await self.workspaces.release_all(repo)
		except (OSError, ConfigurationError) as exc:
			logger.warning("Worktree cleanup for %s failed: %s", mission_id, exc)
		await self._notify(f"Mission {mission_id} aborted: {reason}")
		return mission

	async def retry_item(self, repo: str, mission_id: str, item_id: str) -> Mission:
		"""Re-arm a failed or halted item and clear its health tracking.

		A mission paused only by halted work returns to in_progress; the caller runs the loop.
		"""
		mission = await self.store.get(repo, mission_id)
		item = mission.get_item(item_id)
		if item is None:
			raise MissionStateError(f"No work item {item_id} in {mission_id}")
		halted = bool(item.halted_reason) or self.tracker.is_halted(mission_id, item_id)
		if item.status != ItemStatus.FAILED and not halted:
			raise MissionStateError(f"Work item {item_id} is {item.status.value}; only failed or halted items can be retried")

		def _retry(m: Mission) -> None:
			target = m.get_item(item_id)
			if target is None:
				return
			if target.status == ItemStatus.FAILED:
				target.status = ItemStatus.READY
			target.error = ""
			target.halted_reason = ""
			target.worker_index = None
			if m.status == MissionStatus.PAUSED and not m.safety.exceeded():
				m.status = MissionStatus.IN_PROGRESS
				m.status_message = ""

		self.tracker.reset(mission_id, item_id)
		mission = await self.store.mutate(repo, mission_id, _retry)
		self.store.append_activity_log(repo, mission_id, f"Retry requested for {item_id}")
		await self._notify(f"Objective {item_id} in {mission_id} re-armed for retry")
		return mission

	async def extend_limits(
		self, repo: str, mission_id: str, extra_sessions: int = 0, extra_hours: float = 0.0,
	) -> Mission:
		"""Raise safety limits; a paused mission whose limits now hold goes back to in_progress."""
		if extra_sessions < 0 or extra_hours < 0:
			raise ConfigurationError("Limits can only be raised")

		def _extend(m: Mission) -> None:
			m.safety.max_sessions += extra_sessions
			m.safety.max_elapsed_hours += extra_hours
			if m.status == MissionStatus.PAUSED and not m.safety.exceeded():
				m.status = MissionStatus.IN_PROGRESS
				m.status_message = ""

		mission = await self.store.mutate(repo, mission_id, _extend)
		self.store.append_activity_log(
			repo, mission_id, f"Limits raised by {extra_sessions} sessions / {extra_hours}h",
		)
		await self._notify(format_status(mission))
		return mission
