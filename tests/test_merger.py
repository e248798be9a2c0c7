"""Tests for the integration merger against real git repositories."""

from __future__ import annotations

from pathlib import Path

import pytest

from commanddeck.collaborators import ConflictResolver
from commanddeck.merger import IntegrationMerger
from commanddeck.models import ItemStatus, Mission, WorkItem
from commanddeck.store import MissionStore
from commanddeck.workspace import WorkspaceManager
from conftest import commit_file, git, make_work_item


def _branch_with_file(repo: Path, branch: str, name: str, content: str) -> None:
	git(repo, "checkout", "-b", branch, "main")
	commit_file(repo, name, content)
	git(repo, "checkout", "main")


class ResolveByTakingTheirs(ConflictResolver):
	def __init__(self, repo: Path) -> None:
		self.repo = repo
		self.calls: list[str] = []

	async def resolve(self, branch: str, item: WorkItem, mission: Mission) -> bool:
		self.calls.append(branch)
		git(self.repo, "checkout", "--theirs", ".")
		git(self.repo, "add", "-A")
		git(self.repo, "commit", "--no-edit")
		return True


class GiveUp(ConflictResolver):
	async def resolve(self, branch: str, item: WorkItem, mission: Mission) -> bool:
		return False


class CommitThenGiveUp(ConflictResolver):
	"""Commits a half-resolved merge and then reports failure."""

	def __init__(self, repo: Path) -> None:
		self.repo = repo

	async def resolve(self, branch: str, item: WorkItem, mission: Mission) -> bool:
		(self.repo / "README.md").write_text("# half resolved\n")
		git(self.repo, "add", "-A")
		git(self.repo, "commit", "--no-edit")
		return False


@pytest.fixture()
def repo(project_dir: Path) -> Path:
	return project_dir / "demo"


@pytest.fixture()
async def mission(store: MissionStore, repo: Path) -> Mission:
	_branch_with_file(repo, "item-1", "one.txt", "one\n")
	_branch_with_file(repo, "item-2", "README.md", "# from item 2\n")
	_branch_with_file(repo, "item-3", "README.md", "# from item 3\n")
	created = await store.create("demo", "merge test")
	return await store.replace_items("demo", created.id, [
		make_work_item(id="obj-1", status=ItemStatus.DONE, git_branch="item-1"),
		make_work_item(id="obj-2", status=ItemStatus.DONE, git_branch="item-2"),
		make_work_item(id="obj-3", status=ItemStatus.DONE, git_branch="item-3"),
	])


def _merger(store: MissionStore, project_dir: Path, resolver: ConflictResolver | None = None) -> IntegrationMerger:
	return IntegrationMerger(store, WorkspaceManager(project_dir), resolver)


class TestIntegrationBranch:
	async def test_created_once(self, store: MissionStore, project_dir: Path, mission: Mission, repo: Path) -> None:
		merger = _merger(store, project_dir)
		await merger.ensure_integration_branch(mission)
		await merger.ensure_integration_branch(mission)
		assert mission.integration_branch in git(repo, "branch", "--list", mission.integration_branch)

	async def test_bad_base(self, store: MissionStore, project_dir: Path, mission: Mission) -> None:
		mission.default_branch = "does-not-exist"
		with pytest.raises(RuntimeError):
			await _merger(store, project_dir).ensure_integration_branch(mission)


class TestMergeItem:
	async def test_clean_merge(self, store: MissionStore, project_dir: Path, mission: Mission, repo: Path) -> None:
		merger = _merger(store, project_dir)
		await merger.ensure_integration_branch(mission)
		outcome = await merger.merge_item(mission, mission.work_items[0])
		assert outcome.merged and not outcome.conflict
		assert "one.txt" in git(repo, "ls-tree", "--name-only", mission.integration_branch)
		assert git(repo, "rev-parse", "--abbrev-ref", "HEAD").strip() == "main"

	async def test_conflict_without_resolver_aborts(
		self, store: MissionStore, project_dir: Path, mission: Mission, repo: Path,
	) -> None:
		merger = _merger(store, project_dir)
		await merger.ensure_integration_branch(mission)
		assert (await merger.merge_item(mission, mission.work_items[1])).merged
		before = git(repo, "rev-parse", mission.integration_branch)

		outcome = await merger.merge_item(mission, mission.work_items[2])
		assert outcome.conflict
		assert not outcome.merged
		assert outcome.conflicted_files == ["README.md"]
		assert git(repo, "rev-parse", mission.integration_branch) == before
		assert git(repo, "status", "--porcelain").strip() == ""

	async def test_resolver_failure_aborts(
		self, store: MissionStore, project_dir: Path, mission: Mission, repo: Path,
	) -> None:
		merger = _merger(store, project_dir, GiveUp())
		await merger.ensure_integration_branch(mission)
		await merger.merge_item(mission, mission.work_items[1])
		outcome = await merger.merge_item(mission, mission.work_items[2])
		assert outcome.conflict and not outcome.merged
		assert git(repo, "status", "--porcelain").strip() == ""

	async def test_resolver_commit_rolled_back_on_failure(
		self, store: MissionStore, project_dir: Path, mission: Mission, repo: Path,
	) -> None:
		merger = _merger(store, project_dir, CommitThenGiveUp(repo))
		await merger.ensure_integration_branch(mission)
		await merger.merge_item(mission, mission.work_items[1])
		before = git(repo, "rev-parse", mission.integration_branch)

		outcome = await merger.merge_item(mission, mission.work_items[2])
		assert outcome.conflict and not outcome.merged
		assert git(repo, "rev-parse", mission.integration_branch) == before
		assert git(repo, "show", f"{mission.integration_branch}:README.md") == "# from item 2\n"
		assert git(repo, "status", "--porcelain").strip() == ""

	async def test_resolver_success(
		self, store: MissionStore, project_dir: Path, mission: Mission, repo: Path,
	) -> None:
		resolver = ResolveByTakingTheirs(repo)
		merger = _merger(store, project_dir, resolver)
		await merger.ensure_integration_branch(mission)
		await merger.merge_item(mission, mission.work_items[1])
		outcome = await merger.merge_item(mission, mission.work_items[2])
		assert outcome.merged and outcome.resolved_by_agent
		assert resolver.calls == ["item-3"]
		assert git(repo, "show", f"{mission.integration_branch}:README.md") == "# from item 3\n"


class TestMergeCompleted:
	async def test_persists_results(self, store: MissionStore, project_dir: Path, mission: Mission) -> None:
		merger = _merger(store, project_dir)
		await merger.ensure_integration_branch(mission)
		outcomes = await merger.merge_completed(mission)
		assert [o.merged for o in outcomes] == [True, True, False]

		loaded = await store.get("demo", mission.id)
		assert [i.merged for i in loaded.work_items] == [True, True, False]
		assert "README.md" in loaded.work_items[2].merge_error

	async def test_skips_merged_and_unfinished(self, store: MissionStore, project_dir: Path, mission: Mission) -> None:
		mission.work_items[0].merged = True
		mission.work_items[1].status = ItemStatus.FAILED
		merger = _merger(store, project_dir)
		await merger.ensure_integration_branch(mission)
		outcomes = await merger.merge_completed(mission)
		assert [o.item_id for o in outcomes] == ["obj-3"]
		assert outcomes[0].merged
