"""Contracts for the external capabilities the scheduler depends on."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from commanddeck.models import Mission, Role, WorkItem


@dataclass
class WorkerResult:
	"""Outcome of one agent invocation."""

	success: bool = False
	exit_code: int | None = None
	stdout: str = ""
	stderr: str = ""
	auth_failure: bool = False
	auth_url: str = ""
	timed_out: bool = False
	verdict: str = ""  # reviews only: passed/issues

	@property
	def error(self) -> str:
		if self.timed_out:
			return "worker timed out"
		if self.auth_failure:
			return "agent authentication failed"
		tail = (self.stderr or self.stdout).strip()
		return tail[-500:] if tail else f"exit code {self.exit_code}"


@dataclass
class PullRequestInfo:
	number: int | None = None
	url: str = ""


class Planner(ABC):
	"""Decomposes a mission into work items and writes them into the store."""

	@abstractmethod
	async def decompose(self, mission: Mission) -> None:
		"""Populate the mission's work items in the store."""


class Worker(ABC):
	"""Executes one work item inside its workspace."""

	@abstractmethod
	async def execute(self, workspace_path: Path, item: WorkItem, mission: Mission) -> WorkerResult:
		"""Run the item's agent in ``workspace_path``. Leaves commits and evidence on success."""


class Reviewer(ABC):
	"""Runs a mandatory specialist review of a completed item."""

	@abstractmethod
	async def review(self, role: Role, item: WorkItem, mission: Mission) -> WorkerResult:
		"""Review a done item as ``role``."""


class ConflictResolver(ABC):
	"""Repairs a conflicted merge of ``branch`` into the integration branch."""

	@abstractmethod
	async def resolve(self, branch: str, item: WorkItem, mission: Mission) -> bool:
		"""Resolve and commit the in-progress merge. Returns True on success."""


class PullRequestProvider(ABC):
	"""Hosts the pull request a finished mission is handed off as."""

	@abstractmethod
	async def create_pull_request(self, mission: Mission, body: str) -> PullRequestInfo:
		"""Push the integration branch and open a PR against the default branch."""

	@abstractmethod
	async def update_pull_request(self, mission: Mission, body: str) -> bool:
		"""Replace the description of the mission's PR."""

	@abstractmethod
	async def merge_pull_request(self, mission: Mission) -> bool:
		"""Merge the mission's PR."""

	@abstractmethod
	async def close_pull_request(self, mission: Mission) -> bool:
		"""Close the mission's PR without merging."""

	@abstractmethod
	async def pull_request_state(self, mission: Mission) -> str:
		"""Return open, merged or closed."""


class Notifier(ABC):
	"""Delivers human-readable status text."""

	@abstractmethod
	async def post(self, text: str) -> None:
		"""Deliver a message."""

	async def close(self) -> None:
		return None
