"""Tests for mandatory review bookkeeping and prompts."""

from __future__ import annotations

from pathlib import Path

import pytest

from commanddeck.models import ItemStatus, RiskCategory, Role
from commanddeck.review import ReviewContext, build_review_prompt, pending_reviews
from conftest import make_mission, make_work_item


def _ctx(tmp_path: Path) -> ReviewContext:
	return ReviewContext(
		evidence_path=tmp_path / "artifacts" / "evidence-obj-1.json",
		briefings_dir=tmp_path / "briefings",
		repo_dir=tmp_path / "demo",
	)


class TestPendingReviews:
	def test_done_flagged_items_only(self) -> None:
		mission = make_mission(work_items=[
			make_work_item(id="obj-1", status=ItemStatus.DONE, risk_flags={RiskCategory.AUTH, RiskCategory.CI_WORKFLOW}),
			make_work_item(id="obj-2", status=ItemStatus.IN_PROGRESS, risk_flags={RiskCategory.AUTH}),
			make_work_item(id="obj-3", status=ItemStatus.DONE),
		])
		pairs = [(item.id, role) for item, role in pending_reviews(mission)]
		assert pairs == [("obj-1", Role.INFRA_REVIEWER), ("obj-1", Role.SECURITY_REVIEWER)]

	def test_completed_reviews_not_repeated(self) -> None:
		mission = make_mission(work_items=[
			make_work_item(
				status=ItemStatus.DONE, risk_flags={RiskCategory.AUTH},
				reviewed_by={Role.SECURITY_REVIEWER},
			),
		])
		assert pending_reviews(mission) == []

	def test_human_never_auto_invoked(self) -> None:
		mission = make_mission(work_items=[
			make_work_item(status=ItemStatus.DONE, risk_flags={RiskCategory.MIGRATION, RiskCategory.DEPENDENCY}),
		])
		assert [role for _, role in pending_reviews(mission)] == [Role.TEST_REVIEWER]


class TestReviewPrompt:
	def test_security_prompt(self, tmp_path: Path) -> None:
		item = make_work_item(risk_flags={RiskCategory.AUTH}, git_branch="commanddeck/m/obj-1")
		prompt = build_review_prompt(Role.SECURITY_REVIEWER, item, make_mission(), _ctx(tmp_path))
		assert "security-reviewer" in prompt
		assert "commanddeck/m/obj-1" in prompt
		assert "security-reviewer-output-obj-1.json" in prompt
		assert "Risk flags: auth" in prompt

	def test_test_prompt_uses_project_command(self, tmp_path: Path) -> None:
		mission = make_mission(project_commands={"test": "make check"})
		prompt = build_review_prompt(Role.TEST_REVIEWER, make_work_item(), mission, _ctx(tmp_path))
		assert "Run make check." in prompt

	def test_unknown_role(self, tmp_path: Path) -> None:
		with pytest.raises(ValueError):
			build_review_prompt(Role.HUMAN, make_work_item(), make_mission(), _ctx(tmp_path))
