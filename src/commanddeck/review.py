"""Mandatory specialist reviews for risk-flagged work items."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from commanddeck.models import ItemStatus, Mission, Role, WorkItem
from commanddeck.risk import mandatory_reviewers


@dataclass
class ReviewContext:
	"""Paths a reviewer needs in addition to the item itself."""

	evidence_path: Path
	briefings_dir: Path
	repo_dir: Path


def _header(role: Role, item: WorkItem, mission: Mission, ctx: ReviewContext) -> str:
	flags = ", ".join(sorted(f.value for f in item.risk_flags)) or "none"
	return (
		f"You are the {role.value} for mission {mission.id} on repository {mission.repo}.\n"
		f"Objective {item.id}: {item.title}\n{item.description}\n\n"
		f"Risk flags: {flags}\n"
		f"The change lives on branch {item.git_branch} (checkout: {ctx.repo_dir}).\n"
		f"The worker's evidence bundle is at {ctx.evidence_path}.\n"
	)


def _footer(role: Role, item: WorkItem, ctx: ReviewContext) -> str:
	out = ctx.briefings_dir / f"{role.value}-output-{item.id}.json"
	return (
		f"\nWrite your verdict as JSON to {out} with keys "
		'"verdict" ("passed" or "issues"), "findings" (list of strings) and "summary".\n'
		"Do not modify the code under review."
	)


def _security_prompt(item: WorkItem, mission: Mission, ctx: ReviewContext) -> str:
	return _header(Role.SECURITY_REVIEWER, item, mission, ctx) + (
		"\nReview the diff for authentication and authorization flaws, injection, "
		"secret handling, unsafe defaults and missing input validation."
	) + _footer(Role.SECURITY_REVIEWER, item, ctx)


def _test_prompt(item: WorkItem, mission: Mission, ctx: ReviewContext) -> str:
	test_cmd = mission.project_commands.get("test", "the project's test suite")
	return _header(Role.TEST_REVIEWER, item, mission, ctx) + (
		f"\nRun {test_cmd}. Check that dependency changes are pinned, that lockfiles "
		"match manifests, and that new behavior is covered by tests."
	) + _footer(Role.TEST_REVIEWER, item, ctx)


def _infra_prompt(item: WorkItem, mission: Mission, ctx: ReviewContext) -> str:
	return _header(Role.INFRA_REVIEWER, item, mission, ctx) + (
		"\nReview CI, deployment and infrastructure changes for broken pipelines, "
		"privilege escalation, leaked credentials and irreversible operations."
	) + _footer(Role.INFRA_REVIEWER, item, ctx)


def _architect_prompt(item: WorkItem, mission: Mission, ctx: ReviewContext) -> str:
	return _header(Role.ARCHITECT, item, mission, ctx) + (
		"\nReview module boundaries, coupling and consistency with the existing design."
	) + _footer(Role.ARCHITECT, item, ctx)


def _data_modeler_prompt(item: WorkItem, mission: Mission, ctx: ReviewContext) -> str:
	return _header(Role.DATA_MODELER, item, mission, ctx) + (
		"\nReview schema changes for data loss, missing indexes, and whether the "
		"migration can be rolled back."
	) + _footer(Role.DATA_MODELER, item, ctx)


REVIEW_PROMPTS: dict[Role, Callable[[WorkItem, Mission, ReviewContext], str]] = {
	Role.SECURITY_REVIEWER: _security_prompt,
	Role.TEST_REVIEWER: _test_prompt,
	Role.INFRA_REVIEWER: _infra_prompt,
	Role.ARCHITECT: _architect_prompt,
	Role.DATA_MODELER: _data_modeler_prompt,
}


def build_review_prompt(role: Role, item: WorkItem, mission: Mission, ctx: ReviewContext) -> str:
	"""Raises ValueError for a role that has no review prompt."""
	builder = REVIEW_PROMPTS.get(role)
	if builder is None:
		raise ValueError(f"No review prompt for role {role.value!r}")
	return builder(item, mission, ctx)


def pending_reviews(mission: Mission) -> list[tuple[WorkItem, Role]]:
	"""(item, role) pairs still owed a review. ``human`` is never auto-invoked."""
	pending: list[tuple[WorkItem, Role]] = []
	for item in mission.work_items:
		if item.status != ItemStatus.DONE or not item.risk_flags:
			continue
		required = mandatory_reviewers(item.risk_flags) - {Role.HUMAN}
		for role in sorted(required - item.reviewed_by, key=lambda r: r.value):
			pending.append((item, role))
	return pending
