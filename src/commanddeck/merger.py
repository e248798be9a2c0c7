"""Integration merger -- folds completed item branches into the mission's integration branch.

Merges run in the project's main checkout, one branch at a time under
``_merge_lock``. A conflicted merge is handed to the conflict resolver; if it
cannot produce a merge commit the merge is aborted so the integration branch
is never left half-merged.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from commanddeck.gitutil import run_git
from commanddeck.models import ItemStatus, Mission, WorkItem
from commanddeck.observability import log_event
from commanddeck.validate import assert_safe_ref

if TYPE_CHECKING:
	from commanddeck.collaborators import ConflictResolver
	from commanddeck.store import MissionStore
	from commanddeck.workspace import WorkspaceManager

logger = logging.getLogger(__name__)


@dataclass
class MergeOutcome:
	"""Result of merging a single item branch."""

	item_id: str = ""
	branch: str = ""
	merged: bool = False
	conflict: bool = False
	resolved_by_agent: bool = False
	conflicted_files: list[str] = field(default_factory=list)
	output: str = ""


class IntegrationMerger:
	"""Sequential merge of item branches with conflict escalation."""

	def __init__(
		self,
		store: MissionStore,
		workspaces: WorkspaceManager,
		resolver: ConflictResolver | None = None,
	) -> None:
		self.store = store
		self.workspaces = workspaces
		self.resolver = resolver
		self._merge_lock = asyncio.Lock()

	def _repo_dir(self, mission: Mission) -> Path:
		return self.workspaces.repo_path(mission.repo)

	async def ensure_integration_branch(self, mission: Mission) -> None:
		"""Create the integration branch from the default branch if it does not exist yet."""
		branch = assert_safe_ref(mission.integration_branch, "integration branch")
		base = assert_safe_ref(mission.default_branch, "default branch")
		cwd = self._repo_dir(mission)
		ok, _ = await run_git(cwd, "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
		if ok:
			return
		ok, out = await run_git(cwd, "branch", branch, base)
		if not ok:
			raise RuntimeError(f"Could not create integration branch {branch} from {base}: {out.strip()}")
		logger.info("Created integration branch %s from %s", branch, base)

	async def _conflicted_files(self, cwd: Path) -> list[str]:
		ok, out = await run_git(cwd, "diff", "--name-only", "--diff-filter=U")
		if not ok:
			return []
		return [line.strip() for line in out.splitlines() if line.strip()]

	async def _merge_in_progress(self, cwd: Path) -> bool:
		ok, _ = await run_git(cwd, "rev-parse", "-q", "--verify", "MERGE_HEAD")
		return ok

	async def merge_item(self, mission: Mission, item: WorkItem) -> MergeOutcome:
		"""Merge one item branch into the integration branch, escalating conflicts."""
		branch = assert_safe_ref(item.git_branch, "item branch")
		outcome = MergeOutcome(item_id=item.id, branch=branch)
		cwd = self._repo_dir(mission)

		async with self._merge_lock:
			ok, out = await run_git(cwd, "checkout", mission.integration_branch)
			if not ok:
				outcome.output = f"checkout {mission.integration_branch} failed: {out.strip()}"
				logger.error("Merge of %s skipped: %s", branch, outcome.output)
				return outcome
			ok, head = await run_git(cwd, "rev-parse", "HEAD")
			if not ok:
				outcome.output = f"could not read {mission.integration_branch} head: {head.strip()}"
				logger.error("Merge of %s skipped: %s", branch, outcome.output)
				return outcome
			pre_merge = head.strip()
			try:
				ok, out = await run_git(cwd, "merge", branch, "--no-edit")
				outcome.output = out
				if ok:
					outcome.merged = True
					logger.info("Merged %s into %s", branch, mission.integration_branch)
					return outcome

				if not await self._merge_in_progress(cwd):
					logger.error("Merge of %s failed without a conflict: %s", branch, out.strip()[:300])
					return outcome

				outcome.conflict = True
				outcome.conflicted_files = await self._conflicted_files(cwd)
				log_event(
					"merge.conflict", mission_id=mission.id, objective_id=item.id,
					branch=branch, files=outcome.conflicted_files,
				)

				if self.resolver is not None:
					try:
						resolved = await self.resolver.resolve(branch, item, mission)
					except Exception as exc:
						logger.error("Conflict resolver raised for %s: %s", branch, exc)
						resolved = False
					if resolved and not await self._merge_in_progress(cwd) and not await self._conflicted_files(cwd):
						outcome.merged = True
						outcome.resolved_by_agent = True
						logger.info("Conflict on %s resolved by agent", branch)
						return outcome

				if await self._merge_in_progress(cwd):
					await run_git(cwd, "merge", "--abort")
				# Integration branch goes back to its pre-merge head, even past a resolver commit
				await run_git(cwd, "checkout", "-f", mission.integration_branch)
				await run_git(cwd, "reset", "--hard", pre_merge)
				logger.warning(
					"Unresolved conflict merging %s (%s); merge aborted",
					branch, ", ".join(outcome.conflicted_files) or "unknown files",
				)
				return outcome
			finally:
				await run_git(cwd, "checkout", mission.default_branch)

	async def merge_completed(self, mission: Mission) -> list[MergeOutcome]:
		"""Merge every done, unmerged item with a branch, persisting each result."""
		outcomes: list[MergeOutcome] = []
		candidates = [
			i for i in mission.work_items
			if i.status == ItemStatus.DONE and not i.merged and i.git_branch
		]
		for item in candidates:
			outcome = await self.merge_item(mission, item)
			outcomes.append(outcome)

			def _record(m: Mission, outcome: MergeOutcome = outcome) -> None:
				target = m.get_item(outcome.item_id)
				if target is None:
					return
				target.merged = outcome.merged
				if outcome.merged:
					target.merge_error = ""
				else:
					files = ", ".join(outcome.conflicted_files)
					target.merge_error = f"merge conflict in {files}" if outcome.conflict else outcome.output.strip()[:500]

			await self.store.mutate(mission.repo, mission.id, _record)
			status = "merged" if outcome.merged else "conflict" if outcome.conflict else "failed"
			self.store.append_activity_log(mission.repo, mission.id, f"Merge {item.id} ({item.git_branch}): {status}")
		return outcomes
