"""Workspace manager -- one git worktree per active worker slot.

Worktrees live next to the main checkout as ``<project_dir>/<repo>-wt-<slot>``
so a crashed run can always find and sweep them by name.
"""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from commanddeck.gitutil import run_git
from commanddeck.validate import assert_safe_ref, validate_repo_name

logger = logging.getLogger(__name__)

FETCH_TIMEOUT = 60.0
_SLOT_SUFFIX_RE = re.compile(r"-wt-\d+$")


class WorkspaceError(RuntimeError):
	"""A workspace could not be created."""


@dataclass
class WorktreeInfo:
	"""One entry of ``git worktree list --porcelain``."""

	path: str = ""
	head: str = ""
	branch: str = ""
	detached: bool = False
	bare: bool = False


def parse_worktree_list(output: str) -> list[WorktreeInfo]:
	entries: list[WorktreeInfo] = []
	current: WorktreeInfo | None = None
	for line in output.splitlines():
		if line.startswith("worktree "):
			current = WorktreeInfo(path=line[len("worktree "):])
			entries.append(current)
		elif current is None:
			continue
		elif line.startswith("HEAD "):
			current.head = line[len("HEAD "):]
		elif line.startswith("branch "):
			current.branch = line[len("branch "):].removeprefix("refs/heads/")
		elif line == "detached":
			current.detached = True
		elif line == "bare":
			current.bare = True
	return entries


class WorkspaceManager:
	"""Creates and removes isolated, branch-scoped worktrees of a project checkout."""

	def __init__(self, project_dir: str | Path) -> None:
		self.project_dir = Path(project_dir)

	def repo_path(self, repo: str) -> Path:
		validate_repo_name(repo)
		return self.project_dir / repo

	def workspace_path(self, repo: str, slot: int) -> Path:
		validate_repo_name(repo)
		return self.project_dir / f"{repo}-wt-{int(slot)}"

	async def default_branch(self, repo: str) -> str:
		"""Resolve origin/HEAD, falling back to a local main, then master."""
		cwd = self.repo_path(repo)
		ok, out = await run_git(cwd, "symbolic-ref", "refs/remotes/origin/HEAD")
		if ok and out.strip():
			return out.strip().removeprefix("refs/remotes/origin/")
		for candidate in ("main", "master"):
			ok, _ = await run_git(cwd, "rev-parse", "--verify", "--quiet", candidate)
			if ok:
				return candidate
		return "main"

	async def provision(self, repo: str, slot: int, branch: str, base_branch: str | None = None) -> Path:
		"""Create a fresh worktree for ``slot`` on a new ``branch`` cut from ``base_branch``.

		Leftovers from a previous run (stale worktree, same-named branch) are
		removed first. Fetch and stale-branch deletion are best-effort; only the
		final ``worktree add`` is fatal.

		Raises:
			WorkspaceError: If the worktree cannot be created.
		"""
		assert_safe_ref(branch, "branch")
		cwd = self.repo_path(repo)
		if not (cwd / ".git").exists():
			raise WorkspaceError(f"No git checkout for {repo} at {cwd}")
		base = base_branch or await self.default_branch(repo)
		assert_safe_ref(base, "base branch")
		path = self.workspace_path(repo, slot)

		await self._remove_worktree(cwd, path)

		ok, out = await run_git(cwd, "fetch", "origin", timeout=FETCH_TIMEOUT)
		if not ok:
			logger.info("Fetch failed for %s (continuing offline): %s", repo, out.strip()[:200])

		ok, _ = await run_git(cwd, "branch", "-D", branch)
		if ok:
			logger.info("Deleted leftover branch %s in %s", branch, repo)

		ok, out = await run_git(cwd, "worktree", "add", str(path), "-b", branch, base)
		if not ok:
			raise WorkspaceError(f"Failed to create worktree {path} on {branch} from {base}: {out.strip()}")
		logger.info("Provisioned slot %d for %s at %s (%s)", slot, repo, path, branch)
		return path

	async def release(self, repo: str, slot: int) -> None:
		"""Remove the slot's worktree and its git registration. Missing state is fine."""
		await self._remove_worktree(self.repo_path(repo), self.workspace_path(repo, slot))

	async def release_all(self, repo: str) -> list[Path]:
		"""Remove every ``<repo>-wt-<n>`` worktree, registered or orphaned. Returns removed paths."""
		cwd = self.repo_path(repo)
		removed: list[Path] = []
		main = cwd.resolve()
		for entry in await self.list_worktrees(repo):
			path = Path(entry.path)
			if path.resolve() == main or entry.bare:
				continue
			if _SLOT_SUFFIX_RE.search(path.name) and path.name.startswith(f"{repo}-wt-"):
				await self._remove_worktree(cwd, path)
				removed.append(path)

		# Orphaned directories from a crash after registration was pruned
		if self.project_dir.exists():
			for path in self.project_dir.glob(f"{repo}-wt-*"):
				if path.is_dir() and _SLOT_SUFFIX_RE.search(path.name) and path not in removed:
					shutil.rmtree(path, ignore_errors=True)
					removed.append(path)

		await run_git(cwd, "worktree", "prune")
		return removed

	async def list_worktrees(self, repo: str) -> list[WorktreeInfo]:
		ok, out = await run_git(self.repo_path(repo), "worktree", "list", "--porcelain")
		if not ok:
			logger.warning("git worktree list failed for %s: %s", repo, out.strip()[:200])
			return []
		return parse_worktree_list(out)

	async def _remove_worktree(self, cwd: Path, path: Path) -> None:
		ok, _ = await run_git(cwd, "worktree", "remove", "--force", str(path))
		if not ok and path.exists():
			shutil.rmtree(path, ignore_errors=True)
		await run_git(cwd, "worktree", "prune")
