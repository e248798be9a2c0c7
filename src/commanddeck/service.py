"""Top-level orchestrator: wires config, store, collaborators and scheduler together."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable

from commanddeck.collaborators import (
	ConflictResolver,
	Notifier,
	Planner,
	PullRequestProvider,
	Reviewer,
	Worker,
)
from commanddeck.config import CommandDeckConfig
from commanddeck.health import HealthPatrol, HealthReport, HealthTracker, halted_objectives
from commanddeck.merger import IntegrationMerger
from commanddeck.models import Mission, MissionStatus
from commanddeck.notifier import ConsoleNotifier, FanoutNotifier, TelegramNotifier
from commanddeck.planner import AgentPlanner
from commanddeck.pr import GitHubCLIProvider
from commanddeck.registry import MissionRegistry
from commanddeck.report import format_status
from commanddeck.risk import RiskClassifier
from commanddeck.scheduler import MissionScheduler, MissionStateError
from commanddeck.store import MissionNotFound, MissionStore
from commanddeck.worker import AgentConflictResolver, AgentReviewer, AgentRunner, AgentWorker
from commanddeck.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

DRAIN_TIMEOUT = 30.0


def build_notifier(config: CommandDeckConfig) -> Notifier:
	"""Console output always; Telegram as well when a bot token and chat are configured."""
	console = ConsoleNotifier()
	tg = config.notifications.telegram
	if tg.bot_token and tg.chat_id:
		return FanoutNotifier([console, TelegramNotifier(tg.bot_token, tg.chat_id)])
	return console


class CommandDeck:
	"""Owns the process-scoped registries and exposes the operator operations.

	Collaborators default to the agent/git/gh implementations; any of them can
	be injected instead.
	"""

	def __init__(
		self,
		config: CommandDeckConfig,
		*,
		store: MissionStore | None = None,
		workspaces: WorkspaceManager | None = None,
		notifier: Notifier | None = None,
		planner: Planner | None = None,
		worker: Worker | None = None,
		reviewer: Reviewer | None = None,
		resolver: ConflictResolver | None = None,
		pr_provider: PullRequestProvider | None = None,
		runner: AgentRunner | None = None,
	) -> None:
		self.config = config
		self.store = store or MissionStore.from_config(config.store)
		self.workspaces = workspaces or WorkspaceManager(config.workspace.resolved_project_dir)
		self.tracker = HealthTracker()
		self.registry = MissionRegistry()
		self._patrol_task: asyncio.Task[None] | None = None
		self._patrol_stop: asyncio.Event | None = None
		self._driving = 0
		self.notifier = notifier or build_notifier(config)
		self.runner = runner or AgentRunner(config)
		repo_dir = self.workspaces.repo_path

		self.classifier = RiskClassifier({
			name: project.high_risk_patterns
			for name, project in config.projects.items()
			if project.high_risk_patterns
		})
		self.merger = IntegrationMerger(
			self.store, self.workspaces,
			resolver if resolver is not None else AgentConflictResolver(self.runner, self.store, repo_dir),
		)
		self.patrol = HealthPatrol(self.store, self.workspaces, self.tracker, config.health, self.notifier)
		self.scheduler = MissionScheduler(
			config,
			self.store,
			self.workspaces,
			self.merger,
			self.classifier,
			planner or AgentPlanner(self.runner, self.store, config.planner, repo_dir),
			worker or AgentWorker(self.runner, self.store, self.tracker),
			reviewer or AgentReviewer(self.runner, self.store, repo_dir),
			pr_provider or GitHubCLIProvider(repo_dir),
			self.notifier,
			self.tracker,
			self.registry,
		)

	def locate(self, mission_id: str) -> Mission:
		"""Find a mission by id across all repositories."""
		mission = self.store.find(mission_id)
		if mission is None:
			raise MissionNotFound(f"Mission {mission_id} not found")
		return mission

	# -- supervision --

	async def _driven_missions(self) -> list[Mission]:
		"""Missions this process is currently driving, freshly read."""
		missions: list[Mission] = []
		for repo, mission_id in self.registry.active():
			mission = await self.store.read(repo, mission_id)
			if mission is not None:
				missions.append(mission)
		return missions

	@property
	def patrol_running(self) -> bool:
		return self._patrol_task is not None and not self._patrol_task.done()

	def _start_patrol(self) -> None:
		if self.patrol_running:
			return
		self._patrol_stop = asyncio.Event()
		self._patrol_task = asyncio.create_task(self.patrol.run(self._driven_missions, self._patrol_stop))

	async def _stop_patrol(self) -> None:
		task, stop = self._patrol_task, self._patrol_stop
		self._patrol_task = self._patrol_stop = None
		if task is None or stop is None:
			return
		stop.set()
		try:
			await task
		except Exception as exc:
			logger.error("Health patrol ended with error: %s", exc)

	async def _supervise(self, work: Awaitable[Mission]) -> Mission:
		"""Drive a mission as a tracked task while the health patrol watches its workers."""
		self._start_patrol()
		self._driving += 1
		task = asyncio.ensure_future(work)
		self.registry.track(task)
		try:
			return await task
		finally:
			self._driving -= 1
			if self._driving == 0:
				await self._stop_patrol()

	# -- operator operations --

	async def run(self, repo: str, prompt: str, *, review_plan: bool = False) -> Mission:
		return await self._supervise(self.scheduler.start(repo, prompt, auto_approve=not review_plan))

	async def resume(self, mission_id: str) -> Mission:
		"""Approve a pending plan or checkpoint; an interrupted in-progress mission is recovered."""
		mission = self.locate(mission_id)
		if mission.status in (MissionStatus.IN_PROGRESS, MissionStatus.MERGING):
			return await self._supervise(self.scheduler.recover(mission.repo, mission_id))
		return await self._supervise(self.scheduler.resume(mission.repo, mission_id))

	async def abort(self, mission_id: str, reason: str = "aborted by operator") -> Mission:
		mission = self.locate(mission_id)
		killed = await self.runner.kill_all(mission_id)
		if killed:
			logger.info("Killed %d running agent(s) for %s", killed, mission_id)
		return await self.scheduler.abort(mission.repo, mission_id, reason)

	async def retry(self, mission_id: str, item_id: str) -> Mission:
		"""Re-arm an item; continue the mission if that put it back in progress."""
		mission = self.locate(mission_id)
		mission = await self.scheduler.retry_item(mission.repo, mission_id, item_id)
		if mission.status == MissionStatus.IN_PROGRESS and not self.registry.is_active(mission_id):
			return await self._supervise(self.scheduler.run_loop(mission.repo, mission_id))
		return mission

	async def extend(self, mission_id: str, sessions: int = 0, hours: float = 0.0) -> Mission:
		mission = self.locate(mission_id)
		mission = await self.scheduler.extend_limits(mission.repo, mission_id, sessions, hours)
		if mission.status == MissionStatus.IN_PROGRESS and not self.registry.is_active(mission_id):
			return await self._supervise(self.scheduler.run_loop(mission.repo, mission_id))
		return mission

	async def finalize(self, mission_id: str) -> Mission:
		mission = self.locate(mission_id)
		return await self.scheduler.finalize(mission.repo, mission_id)

	async def cleanup(self, repo: str) -> list[str]:
		"""Sweep worker worktrees of a repository. Refuses while one of its missions runs here."""
		for active_repo, mission_id in self.registry.active():
			if active_repo == repo:
				raise MissionStateError(f"Mission {mission_id} is running on {repo}")
		removed = await self.workspaces.release_all(repo)
		return [str(p) for p in removed]

	def status(self, mission_id: str | None = None) -> str:
		mission = self.locate(mission_id) if mission_id else self.store.latest()
		if mission is None:
			return "No missions yet."
		return format_status(mission, halted_objectives(mission, self.tracker))

	async def _active_missions(self) -> list[Mission]:
		return [m for m in self.store.list_missions() if m.status == MissionStatus.IN_PROGRESS]

	async def patrol_once(self) -> list[HealthReport]:
		return await self.patrol.patrol_all(await self._active_missions())

	async def patrol_forever(self, stop: asyncio.Event) -> None:
		await self.patrol.run(self._active_missions, stop)

	async def shutdown(self) -> None:
		"""Drain in-flight mission tasks, stop the patrol and agents, flush notifications."""
		await self.registry.drain(timeout=DRAIN_TIMEOUT)
		await self._stop_patrol()
		killed = await self.runner.kill_all()
		if killed:
			logger.warning("Killed %d agent(s) still running at shutdown", killed)
		await self.notifier.close()
