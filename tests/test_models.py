"""Tests for mission data models."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from commanddeck.models import (
	ItemStatus,
	Mission,
	MissionStatus,
	PullRequestRef,
	RiskCategory,
	Role,
	SafetyLimits,
	SessionLogEntry,
	WorkItem,
	get_ready_items,
	parse_iso,
)
from conftest import make_mission, make_work_item


class TestReadyItems:
	def test_dependencies_must_be_done(self) -> None:
		items = [
			make_work_item(id="A", status=ItemStatus.DONE),
			make_work_item(id="B", depends_on=["A"]),
			make_work_item(id="C", depends_on=["A", "D"]),
			make_work_item(id="D", status=ItemStatus.IN_PROGRESS),
		]
		assert [i.id for i in get_ready_items(items)] == ["B"]

	def test_unknown_dependency_never_ready(self) -> None:
		items = [make_work_item(id="A", depends_on=["ghost"])]
		assert get_ready_items(items) == []

	def test_only_ready_status_counts(self) -> None:
		items = [
			make_work_item(id="A", status=ItemStatus.FAILED),
			make_work_item(id="B", status=ItemStatus.CHECKPOINT_PAUSED),
			make_work_item(id="C"),
		]
		assert [i.id for i in get_ready_items(items)] == ["C"]

	def test_mission_delegates(self) -> None:
		mission = make_mission(work_items=[make_work_item(id="A"), make_work_item(id="B", depends_on=["A"])])
		assert [i.id for i in mission.get_ready_items()] == ["A"]


class TestSafetyLimits:
	def test_session_limit(self) -> None:
		limits = SafetyLimits(max_sessions=2, session_count=2)
		assert "session limit" in limits.exceeded()
		assert limits.remaining_sessions == 0

	def test_time_limit(self) -> None:
		start = datetime(2026, 1, 1, tzinfo=timezone.utc)
		limits = SafetyLimits(max_elapsed_hours=1.0, started_at=start.isoformat())
		assert limits.exceeded(start + timedelta(minutes=30)) == ""
		assert "time limit" in limits.exceeded(start + timedelta(hours=2))

	def test_within_limits(self) -> None:
		assert SafetyLimits().exceeded() == ""


class TestMissionStatus:
	@pytest.mark.parametrize("status", [MissionStatus.COMPLETED, MissionStatus.FAILED, MissionStatus.ABORTED])
	def test_terminal(self, status: MissionStatus) -> None:
		assert status.is_terminal

	def test_paused_is_not_terminal(self) -> None:
		assert not MissionStatus.PAUSED.is_terminal
		assert not make_mission(status=MissionStatus.REVIEW).is_terminal


class TestSerialization:
	def test_mission_round_trip(self) -> None:
		item = make_work_item(
			risk_flags={RiskCategory.AUTH, RiskCategory.DEPENDENCY},
			reviewed_by={Role.SECURITY_REVIEWER},
			review_results={"security-reviewer": "passed"},
			worker_index=1,
		)
		mission = make_mission(
			work_items=[item],
			session_log=[SessionLogEntry(agent="implementer", objective_id="obj-1", exit_code=0)],
			pr=PullRequestRef(number=7, url="https://github.com/o/r/pull/7", state="open"),
			project_commands={"test": "pytest"},
		)
		restored = Mission.from_dict(mission.to_dict())
		assert restored == mission

	def test_sets_serialize_sorted(self) -> None:
		item = make_work_item(risk_flags={RiskCategory.SECURITY, RiskCategory.AUTH})
		assert item.to_dict()["risk_flags"] == ["auth", "security"]

	def test_unknown_role_rejected(self) -> None:
		with pytest.raises(ValueError):
			WorkItem.from_dict({"id": "x", "role": "wizard"})

	def test_unknown_risk_category_rejected(self) -> None:
		with pytest.raises(ValueError):
			WorkItem.from_dict({"id": "x", "risk_flags": ["cosmic-rays"]})

	def test_missing_id_rejected(self) -> None:
		with pytest.raises(KeyError):
			WorkItem.from_dict({"title": "no id"})


class TestProgress:
	def test_percent(self) -> None:
		mission = make_mission(work_items=[
			make_work_item(id="A", status=ItemStatus.DONE),
			make_work_item(id="B"),
			make_work_item(id="C"),
		])
		assert mission.progress() == (1, 3, 33)

	def test_empty(self) -> None:
		assert make_mission().progress() == (0, 0, 0)


class TestParseIso:
	def test_z_suffix(self) -> None:
		assert parse_iso("2026-01-01T00:00:00Z") == datetime(2026, 1, 1, tzinfo=timezone.utc)

	def test_naive_is_utc(self) -> None:
		assert parse_iso("2026-01-01T00:00:00").tzinfo == timezone.utc
