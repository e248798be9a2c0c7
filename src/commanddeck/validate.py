"""Input validation for repository names, git refs and work-item graphs."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
	from commanddeck.models import WorkItem

_SAFE_REF_RE = re.compile(r"^[A-Za-z0-9._/-]+$")
_REPO_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")


class ConfigurationError(ValueError):
	"""Invalid input detected before any state was mutated."""


def assert_safe_ref(ref: str, label: str = "ref") -> str:
	"""Reject git refs that could be interpreted as options or contain shell metacharacters."""
	if not ref or not _SAFE_REF_RE.match(ref):
		raise ConfigurationError(f"Invalid {label}: {ref!r}")
	if ref.startswith("-") or ".." in ref or ref.endswith("/") or ref.endswith(".lock"):
		raise ConfigurationError(f"Invalid {label}: {ref!r}")
	return ref


def validate_repo_name(name: str) -> str:
	if not name or not _REPO_NAME_RE.match(name) or name in (".", ".."):
		raise ConfigurationError(f"Invalid repository name: {name!r}")
	return name


def validate_dependency_graph(items: list[WorkItem]) -> None:
	"""Check that work-item ids are unique, every dependency resolves, and there are no cycles.

	Raises:
		ConfigurationError: describing the first problem found.
	"""
	ids: set[str] = set()
	for item in items:
		if item.id in ids:
			raise ConfigurationError(f"Duplicate work item id: {item.id}")
		ids.add(item.id)

	for item in items:
		for dep in item.depends_on:
			if dep not in ids:
				raise ConfigurationError(f"Work item {item.id} depends on unknown item {dep}")
			if dep == item.id:
				raise ConfigurationError(f"Work item {item.id} depends on itself")

	# Kahn's algorithm: anything left unvisited sits on a cycle
	deps = {item.id: set(item.depends_on) for item in items}
	dependents: dict[str, list[str]] = {item.id: [] for item in items}
	for item in items:
		for dep in item.depends_on:
			dependents[dep].append(item.id)
	queue = [item_id for item_id, d in deps.items() if not d]
	visited = 0
	while queue:
		current = queue.pop()
		visited += 1
		for child in dependents[current]:
			deps[child].discard(current)
			if not deps[child]:
				queue.append(child)
	if visited != len(items):
		cyclic = sorted(item_id for item_id, d in deps.items() if d)
		raise ConfigurationError(f"Dependency cycle among work items: {', '.join(cyclic)}")
