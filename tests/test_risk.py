"""Tests for risk classification and mandatory reviewers."""

from __future__ import annotations

import pytest

from commanddeck.models import RiskCategory, Role
from commanddeck.risk import (
	DEFAULT_PATTERNS,
	RiskClassifier,
	classify_paths,
	classify_text,
	mandatory_reviewers,
	path_matches,
	requires_human,
)
from conftest import make_work_item


class TestPathMatches:
	@pytest.mark.parametrize("path,pattern", [
		(".github/workflows/ci.yml", ".github/workflows/**"),
		("./.github/workflows/ci.yml", ".github/workflows/**"),
		("src/api/auth/token.py", "**/auth/**"),
		("auth/token.py", "**/auth/**"),
		("services/web/requirements-dev.txt", "requirements*.txt"),
		("app/db/migrations/0001_init.py", "**/migrations/**"),
		("infra/main.tf", "**/*.tf"),
	])
	def test_matches(self, path: str, pattern: str) -> None:
		assert path_matches(path, pattern)

	@pytest.mark.parametrize("path,pattern", [
		("src/authentication.py", "**/auth/**"),
		("docs/deploy.md", "deploy/**"),
		("src/main.py", "*.pem"),
		("github/workflows/ci.yml", ".github/workflows/**"),
	])
	def test_no_match(self, path: str, pattern: str) -> None:
		assert not path_matches(path, pattern)


class TestClassify:
	def test_paths(self) -> None:
		found = classify_paths(
			["package.json", "src/auth/login.ts", "README.md"], DEFAULT_PATTERNS,
		)
		assert found == {RiskCategory.DEPENDENCY, RiskCategory.AUTH}

	def test_text_keywords(self) -> None:
		assert RiskCategory.AUTH in classify_text("Add OAuth login flow")
		assert RiskCategory.MIGRATION in classify_text("Write a migration for the users table")
		assert classify_text("Fix typo in README") == set()

	def test_keyword_is_word_prefix(self) -> None:
		assert RiskCategory.AUTH not in classify_text("Update the coauthors list")

	def test_item_prefers_file_scope(self) -> None:
		classifier = RiskClassifier()
		item = make_work_item(title="Rework auth", files_hint=["docs/guide.md"])
		assert classifier.classify(item) == set()

	def test_item_falls_back_to_text(self) -> None:
		item = make_work_item(title="Deploy the new service")
		assert RiskClassifier().classify(item) == {RiskCategory.DEPLOY}

	def test_project_override_replaces_category(self) -> None:
		classifier = RiskClassifier({"webapp": {RiskCategory.AUTH: ["src/login/**"]}})
		item = make_work_item(context_sources=["src/login/form.tsx"])
		assert classifier.classify(item, "webapp") == {RiskCategory.AUTH}
		assert classifier.classify(item, "other") == set()
		assert classifier.patterns_for("webapp")[RiskCategory.DEPENDENCY] == DEFAULT_PATTERNS[RiskCategory.DEPENDENCY]


class TestReviewers:
	def test_mapping(self) -> None:
		assert mandatory_reviewers({RiskCategory.AUTH, RiskCategory.SECURITY}) == {Role.SECURITY_REVIEWER}
		assert mandatory_reviewers({RiskCategory.CI_WORKFLOW, RiskCategory.DEPENDENCY}) == {
			Role.INFRA_REVIEWER, Role.TEST_REVIEWER,
		}

	def test_accepts_string_values(self) -> None:
		assert mandatory_reviewers(["deploy"]) == {Role.INFRA_REVIEWER}

	def test_unknown_category(self) -> None:
		with pytest.raises(ValueError):
			mandatory_reviewers(["weather"])

	def test_migration_requires_human(self) -> None:
		assert requires_human({RiskCategory.MIGRATION})
		assert not requires_human({RiskCategory.AUTH})
		assert mandatory_reviewers(set()) == set()
