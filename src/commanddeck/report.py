"""Human-readable mission reports for notifications and the CLI."""

from __future__ import annotations

from commanddeck.models import ItemStatus, Mission, MissionStatus

ITEM_ICONS = {
	ItemStatus.BLOCKED: "#",
	ItemStatus.READY: " ",
	ItemStatus.IN_PROGRESS: ">",
	ItemStatus.DONE: "+",
	ItemStatus.FAILED: "x",
	ItemStatus.CHECKPOINT_PAUSED: "?",
}

STATUS_LABELS = {
	MissionStatus.PLANNING: "Planning",
	MissionStatus.PENDING_APPROVAL: "Awaiting plan approval",
	MissionStatus.IN_PROGRESS: "In progress",
	MissionStatus.CHECKPOINT_PAUSED: "Paused at checkpoint",
	MissionStatus.MERGING: "Merging",
	MissionStatus.REVIEW: "PR in review",
	MissionStatus.COMPLETED: "Completed",
	MissionStatus.FAILED: "Failed",
	MissionStatus.ABORTED: "Aborted",
	MissionStatus.PAUSED: "Paused (safety limit)",
}


def format_plan(mission: Mission) -> str:
	lines = [f"Plan for {mission.id} ({len(mission.work_items)} objectives):"]
	for item in sorted(mission.work_items, key=lambda i: (i.phase, i.id)):
		deps = f" after {', '.join(item.depends_on)}" if item.depends_on else ""
		marks = []
		if item.checkpoint:
			marks.append("checkpoint")
		if item.risk_flags:
			marks.append("risk: " + ", ".join(sorted(f.value for f in item.risk_flags)))
		suffix = f" [{'; '.join(marks)}]" if marks else ""
		lines.append(f"  P{item.phase} {item.id} ({item.role.value}) {item.title}{deps}{suffix}")
	return "\n".join(lines)


def format_status(mission: Mission, halted: dict[str, str] | None = None) -> str:
	done, total, percent = mission.progress()
	safety = mission.safety
	lines = [
		f"{mission.id} [{mission.repo}] {STATUS_LABELS[mission.status]}",
		f"Task: {mission.description[:200]}",
		f"Progress: {done}/{total} ({percent}%)  Sessions: {safety.session_count}/{safety.max_sessions}"
		f"  Elapsed: {safety.elapsed_hours():.1f}h/{safety.max_elapsed_hours}h",
	]
	if mission.status_message:
		lines.append(f"Note: {mission.status_message}")
	for item in mission.work_items:
		icon = ITEM_ICONS[item.status]
		extra = ""
		if item.status == ItemStatus.IN_PROGRESS and item.worker_index is not None:
			extra = f" (slot {item.worker_index})"
		if item.status == ItemStatus.DONE and not item.merged:
			extra = " (unmerged)"
		if halted and item.id in halted:
			extra += f" HALTED: {halted[item.id]}"
		lines.append(f"  [{icon}] {item.id}: {item.title}{extra}")
	if mission.pr and mission.pr.url:
		lines.append(f"PR: {mission.pr.url} ({mission.pr.state or 'open'})")
	return "\n".join(lines)


def format_failure_inventory(mission: Mission) -> str:
	failed = mission.items_with_status(ItemStatus.FAILED)
	unmerged = [i for i in mission.items_with_status(ItemStatus.DONE) if not i.merged and i.merge_error]
	lines = [f"Mission {mission.id} failed: {mission.status_message or 'no further work possible'}"]
	for item in failed:
		lines.append(f"  [x] {item.id}: {item.title} -- {(item.error or 'no error recorded')[:200]}")
	for item in unmerged:
		lines.append(f"  [!] {item.id}: {item.title} -- {item.merge_error[:200]}")
	ready_ids = {i.id for i in mission.get_ready_items()}
	blocked = [i for i in mission.items_with_status(ItemStatus.READY) if i.id not in ready_ids]
	for item in blocked:
		lines.append(f"  [#] {item.id}: {item.title} -- blocked on {', '.join(item.depends_on)}")
	return "\n".join(lines)
