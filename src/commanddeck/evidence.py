"""Evidence bundles written by workers, and the PR body built from them."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ValidationError

if TYPE_CHECKING:
	from commanddeck.models import Mission

logger = logging.getLogger(__name__)


class FilesChanged(BaseModel, extra="ignore"):
	created: list[str] = []
	modified: list[str] = []
	deleted: list[str] = []


class EvidenceTests(BaseModel, extra="ignore"):
	added: int = 0
	result: Literal["pass", "fail", "skip", "none"] = "none"
	coverage: str | None = None


class EvidenceBundle(BaseModel, extra="ignore"):
	"""Pydantic schema for the evidence file a worker leaves for its objective."""

	objective_id: str
	agent: str
	summary: str
	files_changed: FilesChanged
	commands_run: list[str] = []
	tests: EvidenceTests
	risk_flags: list[str] = []
	notes_for_reviewer: str = ""


def validate_evidence(data: Any) -> tuple[bool, list[str]]:
	"""Check raw evidence JSON. Returns (valid, error messages)."""
	try:
		EvidenceBundle.model_validate(data)
	except ValidationError as exc:
		errors = []
		for err in exc.errors():
			loc = ".".join(str(p) for p in err["loc"]) or "<root>"
			errors.append(f"{loc}: {err['msg']}")
		return False, errors
	return True, []


def read_evidence(path: Path) -> EvidenceBundle | None:
	if not path.exists():
		return None
	try:
		return EvidenceBundle.model_validate(json.loads(path.read_text(encoding="utf-8")))
	except (json.JSONDecodeError, ValidationError) as exc:
		logger.warning("Invalid evidence file %s: %s", path, exc)
		return None


def read_all_evidence(artifacts_dir: Path) -> list[EvidenceBundle]:
	if not artifacts_dir.exists():
		return []
	bundles: list[EvidenceBundle] = []
	for path in sorted(artifacts_dir.glob("evidence-*.json")):
		bundle = read_evidence(path)
		if bundle is not None:
			bundles.append(bundle)
	return bundles


def format_objective_markdown(bundle: EvidenceBundle) -> str:
	fc = bundle.files_changed
	lines = [f"### {bundle.objective_id} ({bundle.agent})", "", bundle.summary, ""]
	for label, files in (("Created", fc.created), ("Modified", fc.modified), ("Deleted", fc.deleted)):
		if files:
			lines.append(f"- **{label}:** " + ", ".join(f"`{f}`" for f in files))
	lines.append(f"- **Tests:** {bundle.tests.result} ({bundle.tests.added} added)")
	if bundle.tests.coverage:
		lines.append(f"- **Coverage:** {bundle.tests.coverage}")
	if bundle.risk_flags:
		lines.append(f"- **Risk flags:** {', '.join(bundle.risk_flags)}")
	if bundle.notes_for_reviewer:
		lines.append(f"- **Reviewer notes:** {bundle.notes_for_reviewer}")
	return "\n".join(lines)


def build_pr_body(mission: Mission, bundles: list[EvidenceBundle]) -> str:
	"""Markdown PR description summarizing the mission and each objective's evidence."""
	done, total, _ = mission.progress()
	lines = [
		"## Mission",
		"",
		mission.description,
		"",
		f"Mission `{mission.id}`: {done}/{total} objectives done, "
		f"{mission.safety.session_count} agent sessions.",
		"",
	]
	flagged = [i for i in mission.work_items if i.risk_flags]
	if flagged:
		lines += ["## Risk review", ""]
		for item in flagged:
			flags = ", ".join(sorted(f.value for f in item.risk_flags))
			reviewed = ", ".join(sorted(r.value for r in item.reviewed_by)) or "none"
			lines.append(f"- `{item.id}` {item.title}: {flags} (reviewed by: {reviewed})")
		lines.append("")
	lines += ["## Objectives", ""]
	if bundles:
		lines += [format_objective_markdown(b) + "\n" for b in bundles]
	else:
		lines += [f"- `{i.id}` {i.title}" for i in mission.work_items]
	return "\n".join(lines).rstrip() + "\n"
