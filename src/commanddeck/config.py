"""TOML configuration loader for CommandDeck."""

from __future__ import annotations

import dataclasses
import os
import re
import shutil
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from commanddeck.models import RiskCategory, Role
from commanddeck.validate import ConfigurationError, validate_repo_name

DEFAULT_CONFIG = "commanddeck.toml"
DEFAULT_ALLOWED_TOOLS = ["Read", "Write", "Edit", "Bash", "Glob", "Grep"]


def _env_int(name: str, default: int) -> int:
	value = os.environ.get(name, "")
	if not value:
		return default
	try:
		return int(value)
	except ValueError:
		raise ConfigurationError(f"{name} must be an integer, got {value!r}") from None


def _env_float(name: str, default: float) -> float:
	value = os.environ.get(name, "")
	if not value:
		return default
	try:
		return float(value)
	except ValueError:
		raise ConfigurationError(f"{name} must be a number, got {value!r}") from None


@dataclass
class StoreConfig:
	"""Mission store location and lock tuning."""

	state_dir: str = ""
	lock_timeout: float = 10.0
	lock_retry_interval: float = 0.05

	@property
	def resolved_state_dir(self) -> Path:
		raw = self.state_dir or os.environ.get("COMMANDDECK_STATE_DIR", "") or "~/.commanddeck"
		return Path(os.path.expanduser(raw))


@dataclass
class WorkspaceConfig:
	"""Where project checkouts and their worktrees live."""

	project_dir: str = ""

	@property
	def resolved_project_dir(self) -> Path:
		raw = self.project_dir or os.environ.get("COMMANDDECK_PROJECT_DIR", "") or "~/projects"
		return Path(os.path.expanduser(raw))


@dataclass
class SafetyConfig:
	"""Default per-mission safety limits."""

	max_workers: int = 3
	max_sessions: int = 50
	max_elapsed_hours: float = 6.0


@dataclass
class PlannerConfig:
	"""Planning agent settings."""

	max_work_items: int = 30
	flush_timeout: float = 5.0  # seconds to wait for the plan to land after the agent exits
	flush_interval: float = 0.5
	timeout: int = 900
	model: str = ""


@dataclass
class WorkerConfig:
	"""Worker agent subprocess settings."""

	command: str = "claude"
	timeout: int = 2700  # 45 minutes
	model: str = "sonnet"
	allowed_tools: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS))
	model_overrides: dict[str, str] = field(default_factory=dict)
	kill_grace: float = 5.0


@dataclass
class HealthConfig:
	"""Health patrol thresholds."""

	interval: int = 120  # seconds between patrols
	warning_minutes: int = 10
	red_minutes: int = 20
	failure_threshold: int = 2
	thrash_threshold: int = 10
	thrash_window: int = 20


@dataclass
class TelegramConfig:
	"""Telegram notification settings."""

	bot_token: str = ""
	chat_id: str = ""


@dataclass
class NotificationConfig:
	"""Notification settings."""

	telegram: TelegramConfig = field(default_factory=TelegramConfig)


@dataclass
class SecurityConfig:
	"""Security settings for worker subprocess isolation."""

	extra_env_keys: list[str] = field(default_factory=list)


@dataclass
class ProjectConfig:
	"""Per-repository overrides. Unset limits fall back to [safety]."""

	default_branch: str = ""
	max_workers: int | None = None
	max_sessions: int | None = None
	max_elapsed_hours: float | None = None
	test_command: str = ""
	lint_command: str = ""
	build_command: str = ""
	model_overrides: dict[str, str] = field(default_factory=dict)
	high_risk_patterns: dict[RiskCategory, list[str]] = field(default_factory=dict)

	@property
	def commands(self) -> dict[str, str]:
		cmds = {
			"test": self.test_command,
			"lint": self.lint_command,
			"build": self.build_command,
		}
		return {k: v for k, v in cmds.items() if v}


@dataclass
class CommandDeckConfig:
	"""Top-level CommandDeck configuration."""

	store: StoreConfig = field(default_factory=StoreConfig)
	workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
	safety: SafetyConfig = field(default_factory=SafetyConfig)
	planner: PlannerConfig = field(default_factory=PlannerConfig)
	worker: WorkerConfig = field(default_factory=WorkerConfig)
	health: HealthConfig = field(default_factory=HealthConfig)
	notifications: NotificationConfig = field(default_factory=NotificationConfig)
	security: SecurityConfig = field(default_factory=SecurityConfig)
	projects: dict[str, ProjectConfig] = field(default_factory=dict)

	def project(self, repo: str) -> ProjectConfig:
		"""Effective settings for a repository, with global safety defaults filled in."""
		pc = self.projects.get(repo, ProjectConfig())
		return dataclasses.replace(
			pc,
			max_workers=pc.max_workers if pc.max_workers is not None else self.safety.max_workers,
			max_sessions=pc.max_sessions if pc.max_sessions is not None else self.safety.max_sessions,
			max_elapsed_hours=(
				pc.max_elapsed_hours if pc.max_elapsed_hours is not None
				else self.safety.max_elapsed_hours
			),
		)

	def model_for(self, role: Role, repo: str = "") -> str:
		"""Model for a role: project override, then global override, then the worker default."""
		if repo:
			override = self.project(repo).model_overrides.get(role.value)
			if override:
				return override
		return self.worker.model_overrides.get(role.value, self.worker.model)


def _build_store(data: dict[str, Any]) -> StoreConfig:
	sc = StoreConfig()
	if "state_dir" in data:
		sc.state_dir = str(data["state_dir"])
	if "lock_timeout" in data:
		sc.lock_timeout = float(data["lock_timeout"])
	if "lock_retry_interval" in data:
		sc.lock_retry_interval = float(data["lock_retry_interval"])
	return sc


def _build_workspace(data: dict[str, Any]) -> WorkspaceConfig:
	wc = WorkspaceConfig()
	if "project_dir" in data:
		wc.project_dir = str(data["project_dir"])
	return wc


def _build_safety(data: dict[str, Any]) -> SafetyConfig:
	sc = SafetyConfig(
		max_workers=_env_int("COMMANDDECK_MAX_WORKERS", 3),
		max_sessions=_env_int("COMMANDDECK_MAX_SESSIONS", 50),
		max_elapsed_hours=_env_float("COMMANDDECK_MAX_HOURS", 6.0),
	)
	if "max_workers" in data:
		sc.max_workers = int(data["max_workers"])
	if "max_sessions" in data:
		sc.max_sessions = int(data["max_sessions"])
	if "max_elapsed_hours" in data:
		sc.max_elapsed_hours = float(data["max_elapsed_hours"])
	return sc


def _build_planner(data: dict[str, Any]) -> PlannerConfig:
	pc = PlannerConfig()
	if "max_work_items" in data:
		pc.max_work_items = int(data["max_work_items"])
	if "flush_timeout" in data:
		pc.flush_timeout = float(data["flush_timeout"])
	if "flush_interval" in data:
		pc.flush_interval = float(data["flush_interval"])
	if "timeout" in data:
		pc.timeout = int(data["timeout"])
	if "model" in data:
		pc.model = str(data["model"])
	return pc


def _build_model_overrides(data: dict[str, Any], section: str) -> dict[str, str]:
	overrides: dict[str, str] = {}
	for role_name, model in data.items():
		try:
			role = Role(role_name)
		except ValueError:
			raise ConfigurationError(f"{section}.model_overrides: unknown role {role_name!r}") from None
		overrides[role.value] = str(model)
	return overrides


def _build_worker(data: dict[str, Any]) -> WorkerConfig:
	wc = WorkerConfig(
		timeout=_env_int("COMMANDDECK_WORKER_TIMEOUT", 2700),
		model=os.environ.get("COMMANDDECK_MODEL", "") or "sonnet",
	)
	if "command" in data:
		wc.command = str(data["command"])
	if "timeout" in data:
		wc.timeout = int(data["timeout"])
	if "model" in data:
		wc.model = str(data["model"])
	if "allowed_tools" in data:
		wc.allowed_tools = [str(t) for t in data["allowed_tools"]]
	if "model_overrides" in data:
		wc.model_overrides = _build_model_overrides(data["model_overrides"], "worker")
	if "kill_grace" in data:
		wc.kill_grace = float(data["kill_grace"])
	return wc


def _build_health(data: dict[str, Any]) -> HealthConfig:
	hc = HealthConfig(interval=_env_int("COMMANDDECK_HEALTH_INTERVAL", 120))
	for key in ("interval", "warning_minutes", "red_minutes", "failure_threshold", "thrash_threshold", "thrash_window"):
		if key in data:
			setattr(hc, key, int(data[key]))
	return hc


def _build_notifications(data: dict[str, Any]) -> NotificationConfig:
	nc = NotificationConfig()
	if "telegram" in data:
		tc = TelegramConfig()
		tg = data["telegram"]
		if "bot_token" in tg:
			tc.bot_token = str(tg["bot_token"])
		if "chat_id" in tg:
			tc.chat_id = str(tg["chat_id"])
		nc.telegram = tc
	return nc


def _build_security(data: dict[str, Any]) -> SecurityConfig:
	sc = SecurityConfig()
	if "extra_env_keys" in data:
		sc.extra_env_keys = [str(k) for k in data["extra_env_keys"]]
	return sc


def build_risk_patterns(data: dict[str, Any]) -> dict[RiskCategory, list[str]]:
	"""Parse a category -> glob list table, rejecting unknown categories."""
	patterns: dict[RiskCategory, list[str]] = {}
	for name, globs in data.items():
		try:
			category = RiskCategory(name)
		except ValueError:
			raise ConfigurationError(f"Unknown risk category: {name!r}") from None
		if isinstance(globs, str):
			globs = [globs]
		patterns[category] = [str(g) for g in globs]
	return patterns


def _build_project(name: str, data: dict[str, Any]) -> ProjectConfig:
	validate_repo_name(name)
	pc = ProjectConfig()
	if "default_branch" in data:
		pc.default_branch = str(data["default_branch"])
	if "max_workers" in data:
		pc.max_workers = int(data["max_workers"])
	if "max_sessions" in data:
		pc.max_sessions = int(data["max_sessions"])
	if "max_elapsed_hours" in data:
		pc.max_elapsed_hours = float(data["max_elapsed_hours"])
	if "test_command" in data:
		pc.test_command = str(data["test_command"])
	if "lint_command" in data:
		pc.lint_command = str(data["lint_command"])
	if "build_command" in data:
		pc.build_command = str(data["build_command"])
	if "model_overrides" in data:
		pc.model_overrides = _build_model_overrides(data["model_overrides"], f"projects.{name}")
	if "high_risk_patterns" in data:
		pc.high_risk_patterns = build_risk_patterns(data["high_risk_patterns"])
	return pc


_ENV_ALLOWLIST = {
	# System essentials
	"HOME", "USER", "LOGNAME", "SHELL", "LANG", "LC_ALL", "LC_CTYPE",
	"TERM", "TMPDIR", "TMP", "TEMP", "XDG_RUNTIME_DIR",
	"XDG_CONFIG_HOME", "XDG_DATA_HOME", "XDG_CACHE_HOME",
	"PATH", "PWD", "SHLVL",
	# Claude auth (OAuth -- NOT raw API keys)
	"CLAUDE_CONFIG_DIR",
	# Toolchains the target projects build with
	"VIRTUAL_ENV", "PYTHONPATH", "NODE_PATH", "NPM_CONFIG_PREFIX",
	# Git identity for worker commits
	"GIT_AUTHOR_NAME", "GIT_AUTHOR_EMAIL",
	"GIT_COMMITTER_NAME", "GIT_COMMITTER_EMAIL",
	"PYTHONIOENCODING", "PYTHONUTF8",
}

# Keys that must NEVER reach workers, even if added to extra_env_keys
_ENV_DENYLIST = {
	"ANTHROPIC_API_KEY", "CLAUDECODE",
	"AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN",
	"GITHUB_TOKEN", "GH_TOKEN", "GITLAB_TOKEN",
	"NPM_TOKEN", "PYPI_TOKEN",
	"DATABASE_URL", "REDIS_URL",
	"TELEGRAM_BOT_TOKEN", "SLACK_BOT_TOKEN", "SLACK_APP_TOKEN",
}

# Populated by load_config from the [security] section
_extra_env_keys: set[str] = set()


def claude_subprocess_env(extra: dict[str, str] | None = None) -> dict[str, str]:
	"""Build a restricted environment for agent subprocesses.

	Only safe system vars plus explicitly configured extras pass through;
	secrets are stripped. ``extra`` is merged in last.
	"""
	allowed = _ENV_ALLOWLIST | _extra_env_keys
	env = {
		k: v for k, v in os.environ.items()
		if k in allowed and k not in _ENV_DENYLIST
	}
	if extra:
		env.update(extra)
	return env


def parse_config(data: dict[str, Any]) -> CommandDeckConfig:
	"""Build a CommandDeckConfig from an already-parsed TOML table."""
	cfg = CommandDeckConfig()
	if "store" in data:
		cfg.store = _build_store(data["store"])
	if "workspace" in data:
		cfg.workspace = _build_workspace(data["workspace"])
	cfg.safety = _build_safety(data.get("safety", {}))
	if "planner" in data:
		cfg.planner = _build_planner(data["planner"])
	cfg.worker = _build_worker(data.get("worker", {}))
	cfg.health = _build_health(data.get("health", {}))
	if "notifications" in data:
		cfg.notifications = _build_notifications(data["notifications"])
	if "security" in data:
		cfg.security = _build_security(data["security"])
	for name, project_data in data.get("projects", {}).items():
		cfg.projects[name] = _build_project(name, project_data)

	global _extra_env_keys
	_extra_env_keys = set(cfg.security.extra_env_keys) - _ENV_DENYLIST
	# Allow env vars as fallback for Telegram credentials
	tg = cfg.notifications.telegram
	if not tg.bot_token:
		tg.bot_token = os.environ.get("TELEGRAM_BOT_TOKEN", "")
	if not tg.chat_id:
		tg.chat_id = os.environ.get("TELEGRAM_CHAT_ID", "")
	return cfg


def load_config(path: str | Path) -> CommandDeckConfig:
	"""Load a commanddeck.toml config file.

	Args:
		path: Path to the TOML config file.

	Returns:
		Parsed CommandDeckConfig.

	Raises:
		FileNotFoundError: If config file doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
		ConfigurationError: If a value is semantically invalid (unknown role, risk category, repo name).
	"""
	config_path = Path(path)
	if not config_path.exists():
		raise FileNotFoundError(f"Config file not found: {config_path}")

	with open(config_path, "rb") as f:
		data = tomllib.load(f)
	return parse_config(data)


def load_config_or_default(path: str | Path) -> CommandDeckConfig:
	"""Like load_config, but falls back to environment-derived defaults when the file is absent."""
	if Path(path).exists():
		return load_config(path)
	return parse_config({})


_TELEGRAM_TOKEN_RE = re.compile(r"^\d+:[A-Za-z0-9_-]+$")


def validate_config(config: CommandDeckConfig) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded CommandDeckConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []

	state_dir = config.store.resolved_state_dir
	if state_dir.exists() and not os.access(state_dir, os.W_OK):
		issues.append(("error", f"state_dir is not writable: {state_dir}"))

	project_dir = config.workspace.resolved_project_dir
	if not project_dir.exists():
		issues.append(("warning", f"project_dir does not exist: {project_dir}"))

	if config.store.lock_timeout <= 0:
		issues.append(("error", "store.lock_timeout must be positive"))
	if config.safety.max_workers < 1:
		issues.append(("error", "safety.max_workers must be at least 1"))
	if config.safety.max_sessions < 1:
		issues.append(("error", "safety.max_sessions must be at least 1"))
	if config.worker.timeout <= 0:
		issues.append(("error", "worker.timeout must be positive"))
	if config.planner.max_work_items < 1:
		issues.append(("error", "planner.max_work_items must be at least 1"))
	if config.health.warning_minutes >= config.health.red_minutes:
		issues.append(("warning", "health.warning_minutes should be below health.red_minutes"))

	if shutil.which(config.worker.command) is None:
		issues.append(("warning", f"worker command not found on PATH: {config.worker.command}"))

	tg = config.notifications.telegram
	if tg.bot_token and not _TELEGRAM_TOKEN_RE.match(tg.bot_token):
		issues.append(("error", "telegram bot_token format invalid (expected digits:alphanumeric)"))
	if tg.bot_token and not tg.chat_id:
		issues.append(("warning", "telegram bot_token set without chat_id"))

	for name, project in config.projects.items():
		checkout = project_dir / name
		if project_dir.exists() and not (checkout / ".git").exists():
			issues.append(("warning", f"project {name} has no git checkout at {checkout}"))
		if project.max_workers is not None and project.max_workers < 1:
			issues.append(("error", f"projects.{name}.max_workers must be at least 1"))

	return issues
