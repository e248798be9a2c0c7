"""Pull request hand-off through the GitHub CLI."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Callable
from pathlib import Path

from commanddeck.collaborators import PullRequestInfo, PullRequestProvider
from commanddeck.gitutil import run_git
from commanddeck.models import Mission
from commanddeck.validate import assert_safe_ref

logger = logging.getLogger(__name__)

_PR_NUMBER_RE = re.compile(r"/pull/(\d+)")
PUSH_TIMEOUT = 120.0


class PullRequestError(RuntimeError):
	"""Pushing or creating the pull request failed."""


def extract_pr_number(url: str) -> int | None:
	match = _PR_NUMBER_RE.search(url)
	return int(match.group(1)) if match else None


class GitHubCLIProvider(PullRequestProvider):
	"""Pushes the integration branch and drives the PR with ``gh``."""

	def __init__(self, repo_dir: Callable[[str], Path], gh: str = "gh") -> None:
		self._repo_dir = repo_dir
		self.gh = gh

	async def _gh(self, cwd: Path, *args: str, input_text: str | None = None) -> tuple[bool, str]:
		try:
			proc = await asyncio.create_subprocess_exec(
				self.gh, *args,
				cwd=str(cwd),
				stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
			)
		except (FileNotFoundError, OSError) as exc:
			return (False, f"{self.gh} not available: {exc}")
		stdout, stderr = await proc.communicate(input_text.encode() if input_text is not None else None)
		if proc.returncode != 0:
			return (False, (stderr or stdout).decode(errors="replace"))
		return (True, stdout.decode(errors="replace"))

	async def create_pull_request(self, mission: Mission, body: str) -> PullRequestInfo:
		head = assert_safe_ref(mission.integration_branch, "integration branch")
		base = assert_safe_ref(mission.default_branch, "default branch")
		cwd = self._repo_dir(mission.repo)

		ok, out = await run_git(cwd, "push", "-u", "origin", head, timeout=PUSH_TIMEOUT)
		if not ok:
			raise PullRequestError(f"push of {head} failed: {out.strip()[:300]}")

		title = f"CommandDeck: {mission.description}"[:120]
		ok, out = await self._gh(
			cwd, "pr", "create", "--title", title, "--body-file", "-", "--base", base, "--head", head,
			input_text=body,
		)
		if not ok:
			raise PullRequestError(f"gh pr create failed: {out.strip()[:300]}")
		url = out.strip().splitlines()[-1] if out.strip() else ""
		logger.info("Opened PR for %s: %s", mission.id, url)
		return PullRequestInfo(number=extract_pr_number(url), url=url)

	async def update_pull_request(self, mission: Mission, body: str) -> bool:
		if mission.pr is None or mission.pr.number is None:
			return False
		ok, out = await self._gh(
			self._repo_dir(mission.repo), "pr", "edit", str(mission.pr.number), "--body-file", "-",
			input_text=body,
		)
		if not ok:
			logger.warning("gh pr edit failed for %s: %s", mission.id, out.strip()[:200])
		return ok

	async def pull_request_state(self, mission: Mission) -> str:
		if mission.pr is None or mission.pr.number is None:
			return "unknown"
		ok, out = await self._gh(
			self._repo_dir(mission.repo), "pr", "view", str(mission.pr.number), "--json", "state,mergedAt,closedAt",
		)
		if not ok:
			return "unknown"
		try:
			data = json.loads(out)
		except json.JSONDecodeError:
			return "unknown"
		if data.get("mergedAt"):
			return "merged"
		if data.get("closedAt"):
			return "closed"
		return str(data.get("state") or "open").lower()

	async def merge_pull_request(self, mission: Mission) -> bool:
		if mission.pr is None or mission.pr.number is None:
			return False
		ok, out = await self._gh(self._repo_dir(mission.repo), "pr", "merge", str(mission.pr.number), "--merge")
		if not ok:
			logger.warning("gh pr merge failed for %s: %s", mission.id, out.strip()[:200])
		return ok

	async def close_pull_request(self, mission: Mission) -> bool:
		if mission.pr is None or mission.pr.number is None:
			return False
		ok, out = await self._gh(self._repo_dir(mission.repo), "pr", "close", str(mission.pr.number))
		if not ok:
			logger.warning("gh pr close failed for %s: %s", mission.id, out.strip()[:200])
		return ok


async def delete_mission_branches(repo_dir: Path, mission: Mission) -> list[str]:
	"""Delete item and integration branches locally and on origin. Returns branches removed locally."""
	branches = [i.git_branch for i in mission.work_items if i.git_branch]
	branches.append(mission.integration_branch)
	removed: list[str] = []
	for branch in branches:
		assert_safe_ref(branch, "branch")
		ok, _ = await run_git(repo_dir, "branch", "-D", branch)
		if ok:
			removed.append(branch)
		await run_git(repo_dir, "push", "origin", "--delete", branch, timeout=PUSH_TIMEOUT)
	return removed
