"""Risk classification of work items and the reviewers each risk demands."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from functools import lru_cache

from commanddeck.models import RiskCategory, Role, WorkItem

DEFAULT_PATTERNS: dict[RiskCategory, list[str]] = {
	RiskCategory.CI_WORKFLOW: [".github/workflows/**", ".gitlab-ci.yml", ".circleci/**"],
	RiskCategory.INFRA: [
		"infra/**", "terraform/**", "**/*.tf", "k8s/**", "helm/**",
		"Dockerfile", "docker-compose*.yml",
	],
	RiskCategory.DEPLOY: ["deploy/**", "fly.toml", "vercel.json", "Procfile", "render.yaml"],
	RiskCategory.MIGRATION: [
		"db/migrate/**", "prisma/migrations/**", "migrations/**", "**/migrations/**", "alembic/**",
	],
	RiskCategory.AUTH: ["**/auth/**", "**/middleware/auth*"],
	RiskCategory.SECURITY: ["**/security/**", "**/crypto/**", "*.pem"],
	RiskCategory.DEPENDENCY: [
		"package.json", "package-lock.json", "pnpm-lock.yaml", "yarn.lock",
		"Gemfile", "Gemfile.lock", "requirements*.txt", "poetry.lock",
		"go.mod", "go.sum", "Cargo.toml", "Cargo.lock",
	],
}

KEYWORDS: dict[RiskCategory, list[str]] = {
	RiskCategory.AUTH: ["auth", "login", "oauth", "jwt", "session", "password", "credential"],
	RiskCategory.SECURITY: ["security", "permission", "rbac", "acl", "encrypt", "secret"],
	RiskCategory.MIGRATION: ["migration", "migrate", "schema", "alter table", "add column"],
	RiskCategory.INFRA: ["docker", "terraform", "kubernetes", "k8s", "helm", "infrastructure"],
	RiskCategory.CI_WORKFLOW: ["ci/cd", "pipeline", "github actions", "workflow"],
	RiskCategory.DEPLOY: ["deploy"],
	RiskCategory.DEPENDENCY: ["dependency", "dependencies", "upgrade", "package", "install"],
}

REVIEWERS: dict[RiskCategory, Role] = {
	RiskCategory.AUTH: Role.SECURITY_REVIEWER,
	RiskCategory.SECURITY: Role.SECURITY_REVIEWER,
	RiskCategory.CI_WORKFLOW: Role.INFRA_REVIEWER,
	RiskCategory.INFRA: Role.INFRA_REVIEWER,
	RiskCategory.DEPLOY: Role.INFRA_REVIEWER,
	RiskCategory.MIGRATION: Role.HUMAN,
	RiskCategory.DEPENDENCY: Role.TEST_REVIEWER,
}


@lru_cache(maxsize=512)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
	"""Translate a path glob into an anchored regex.

	``**/`` matches zero or more directories, ``**`` anything, ``*`` and ``?``
	stay within one path segment.
	"""
	out = ["^"]
	i = 0
	while i < len(pattern):
		if pattern.startswith("**/", i):
			out.append("(?:.*/)?")
			i += 3
		elif pattern.startswith("**", i):
			out.append(".*")
			i += 2
		elif pattern[i] == "*":
			out.append("[^/]*")
			i += 1
		elif pattern[i] == "?":
			out.append("[^/]")
			i += 1
		else:
			out.append(re.escape(pattern[i]))
			i += 1
	out.append("$")
	return re.compile("".join(out))


def path_matches(path: str, pattern: str) -> bool:
	"""Match a repo-relative path. Patterns without a slash also match the basename."""
	path = path.strip().removeprefix("./")
	if glob_to_regex(pattern).match(path):
		return True
	if "/" not in pattern:
		return bool(glob_to_regex(pattern).match(path.rsplit("/", 1)[-1]))
	return False


@lru_cache(maxsize=128)
def _keyword_regex(keyword: str) -> re.Pattern[str]:
	return re.compile(r"\b" + re.escape(keyword), re.IGNORECASE)


def classify_paths(paths: Iterable[str], patterns: Mapping[RiskCategory, list[str]]) -> set[RiskCategory]:
	found: set[RiskCategory] = set()
	for path in paths:
		for category, globs in patterns.items():
			if category in found:
				continue
			if any(path_matches(path, g) for g in globs):
				found.add(category)
	return found


def classify_text(text: str) -> set[RiskCategory]:
	found: set[RiskCategory] = set()
	for category, words in KEYWORDS.items():
		if any(_keyword_regex(w).search(text) for w in words):
			found.add(category)
	return found


def mandatory_reviewers(categories: Iterable[RiskCategory | str]) -> set[Role]:
	"""Reviewer roles required for a set of risk categories.

	Raises:
		ValueError: For a category outside the taxonomy.
	"""
	return {REVIEWERS[RiskCategory(c)] for c in categories}


def requires_human(categories: Iterable[RiskCategory | str]) -> bool:
	return Role.HUMAN in mandatory_reviewers(categories)


class RiskClassifier:
	"""Pure classifier over a default pattern table plus per-repository overrides.

	A repository override replaces the default globs of the categories it names.
	"""

	def __init__(self, project_patterns: Mapping[str, Mapping[RiskCategory, list[str]]] | None = None) -> None:
		self._project_patterns = {
			repo: {RiskCategory(c): list(g) for c, g in table.items()}
			for repo, table in (project_patterns or {}).items()
		}

	def patterns_for(self, repo: str = "") -> dict[RiskCategory, list[str]]:
		patterns = {c: list(g) for c, g in DEFAULT_PATTERNS.items()}
		patterns.update(self._project_patterns.get(repo, {}))
		return patterns

	def classify(self, item: WorkItem, repo: str = "") -> set[RiskCategory]:
		"""Risk categories for an item: by file scope when known, otherwise by its text."""
		paths = [*item.context_sources, *item.files_hint]
		if paths:
			return classify_paths(paths, self.patterns_for(repo))
		return classify_text(f"{item.title}\n{item.description}")
