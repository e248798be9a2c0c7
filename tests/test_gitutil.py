"""Tests for the async git wrapper."""

from __future__ import annotations

from pathlib import Path

from commanddeck.gitutil import run_git


class TestRunGit:
	async def test_success(self, project_dir: Path) -> None:
		ok, out = await run_git(project_dir / "demo", "rev-parse", "--abbrev-ref", "HEAD")
		assert ok
		assert out.strip() == "main"

	async def test_failure_returns_output(self, project_dir: Path) -> None:
		ok, out = await run_git(project_dir / "demo", "checkout", "no-such-branch")
		assert not ok
		assert "no-such-branch" in out
