from __future__ import annotations

import json
import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

Priority = Literal["critical", "high", "medium", "low"]

PRIORITIES: tuple[str, ...] = ("critical", "high", "medium", "low")
CONFIG_DIR_NAME = ".gauntlet"
CONFIG_FILE_NAME = "config.toml"
ADAPTER_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
_BARE_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class ConfigError(RuntimeError):
    """Raised when configuration is missing or malformed."""

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        super().__init__(message)
        self.path = path


def _validate_adapter_names(names: list[str], owner: str) -> list[str]:
    cleaned: list[str] = []
    for name in names:
        value = str(name).strip()
        if not ADAPTER_NAME_PATTERN.match(value):
            raise ConfigError(
                f"{owner}: invalid adapter name {value!r} "
                "(allowed characters: letters, digits, '.', '_', '-')"
            )
        cleaned.append(value)
    return cleaned


def _optional_float(value: Any, owner: str) -> float | None:
    if value is None:
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{owner}: timeout must be a number") from exc
    if parsed <= 0:
        raise ConfigError(f"{owner}: timeout must be positive")
    return parsed


def _parse_models(value: Any, preference: list[str] | None, owner: str) -> dict[str, str]:
    """A model belongs to one adapter; a bare string binds to the sole preferred adapter."""
    if value is None:
        return {}
    if isinstance(value, str):
        if not value.strip():
            return {}
        if not preference or len(preference) != 1:
            raise ConfigError(
                f"{owner}: a plain model name needs exactly one cli_preference entry; "
                'use a table such as model = { claude = "opus" }'
            )
        return {preference[0]: value.strip()}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{owner}: model must be a string or a table of adapter = model")
    names = _validate_adapter_names(list(value), owner)
    return {
        name: str(model).strip() for name, model in zip(names, value.values()) if str(model).strip()
    }


@dataclass(slots=True)
class CheckGateConfig:
    name: str
    command: str
    working_directory: str | None = None
    parallel: bool = False
    run_in_ci: bool = True
    run_locally: bool = True
    timeout: float | None = None
    fail_fast: bool = False

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> CheckGateConfig:
        command = str(data.get("command", "")).strip()
        if not command:
            raise ConfigError(f"check '{name}': command is required")
        return cls(
            name=name,
            command=command,
            working_directory=data.get("working_directory"),
            parallel=bool(data.get("parallel", False)),
            run_in_ci=bool(data.get("run_in_ci", True)),
            run_locally=bool(data.get("run_locally", True)),
            timeout=_optional_float(data.get("timeout"), f"check '{name}'"),
            fail_fast=bool(data.get("fail_fast", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "working_directory": self.working_directory,
            "parallel": self.parallel,
            "run_in_ci": self.run_in_ci,
            "run_locally": self.run_locally,
            "timeout": self.timeout,
            "fail_fast": self.fail_fast,
        }


@dataclass(slots=True)
class ReviewGateConfig:
    name: str
    prompt: str = ""
    prompt_file: str | None = None
    cli_preference: list[str] | None = None
    num_reviews: int = 1
    parallel: bool = True
    run_in_ci: bool = True
    run_locally: bool = True
    timeout: float | None = None
    models: dict[str, str] = field(default_factory=dict)

    def model_for(self, adapter: str) -> str | None:
        return self.models.get(adapter)

    @classmethod
    def from_dict(
        cls, name: str, data: Mapping[str, Any], base_dir: Path | None = None
    ) -> ReviewGateConfig:
        owner = f"review '{name}'"
        prompt = str(data.get("prompt", ""))
        prompt_file = data.get("prompt_file")
        if prompt_file and not prompt:
            prompt_path = Path(prompt_file)
            if not prompt_path.is_absolute() and base_dir is not None:
                prompt_path = base_dir / prompt_path
            try:
                prompt = prompt_path.read_text(encoding="utf-8")
            except OSError as exc:
                raise ConfigError(f"{owner}: cannot read prompt_file {prompt_path}") from exc

        preference = data.get("cli_preference")
        if preference is not None:
            if not isinstance(preference, list) or not preference:
                raise ConfigError(f"{owner}: cli_preference must be a non-empty list")
            preference = _validate_adapter_names(preference, owner)

        try:
            num_reviews = int(data.get("num_reviews", 1))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{owner}: num_reviews must be an integer") from exc
        if num_reviews < 1:
            raise ConfigError(f"{owner}: num_reviews must be at least 1")

        return cls(
            name=name,
            prompt=prompt,
            prompt_file=prompt_file,
            cli_preference=preference,
            num_reviews=num_reviews,
            parallel=bool(data.get("parallel", True)),
            run_in_ci=bool(data.get("run_in_ci", True)),
            run_locally=bool(data.get("run_locally", True)),
            timeout=_optional_float(data.get("timeout"), owner),
            models=_parse_models(data.get("model"), preference, owner),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "prompt": None if self.prompt_file else self.prompt,
            "prompt_file": self.prompt_file,
            "cli_preference": list(self.cli_preference) if self.cli_preference else None,
            "num_reviews": self.num_reviews,
            "parallel": self.parallel,
            "run_in_ci": self.run_in_ci,
            "run_locally": self.run_locally,
            "timeout": self.timeout,
            "model": dict(self.models) or None,
        }


@dataclass(slots=True)
class EntryPointConfig:
    path: str
    checks: list[str] = field(default_factory=list)
    reviews: list[str] = field(default_factory=list)
    exclude: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "checks": list(self.checks),
            "reviews": list(self.reviews),
            "exclude": list(self.exclude),
        }


@dataclass(slots=True)
class ProjectConfig:
    base_branch: str = "origin/main"
    log_dir: str = "gauntlet_logs"
    max_retries: int = 3
    allow_parallel: bool = True
    rerun_new_issue_threshold: Priority = "high"
    cli_preference: list[str] = field(default_factory=lambda: ["claude", "codex", "gemini"])


@dataclass(slots=True)
class StopHookConfig:
    """Unset fields defer to the next configuration layer."""

    enabled: bool | None = None
    run_interval_minutes: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StopHookConfig:
        interval = data.get("run_interval_minutes")
        if interval is not None:
            try:
                interval = int(interval)
            except (TypeError, ValueError) as exc:
                raise ConfigError("stop_hook: run_interval_minutes must be an integer") from exc
            if interval < 0:
                raise ConfigError("stop_hook: run_interval_minutes must not be negative")
        enabled = data.get("enabled")
        return cls(
            enabled=None if enabled is None else bool(enabled),
            run_interval_minutes=interval,
        )


@dataclass(slots=True)
class DebugLogConfig:
    enabled: bool = False
    max_size_mb: float = 10.0


@dataclass(slots=True)
class StopHookSettings:
    enabled: bool = True
    run_interval_minutes: int = 10


@dataclass(slots=True)
class GauntletConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    stop_hook: StopHookConfig = field(default_factory=StopHookConfig)
    debug_log: DebugLogConfig = field(default_factory=DebugLogConfig)
    entry_points: list[EntryPointConfig] = field(default_factory=list)
    checks: dict[str, CheckGateConfig] = field(default_factory=dict)
    reviews: dict[str, ReviewGateConfig] = field(default_factory=dict)

    @classmethod
    def default(cls) -> GauntletConfig:
        return cls(
            entry_points=[EntryPointConfig(path=".", reviews=["code-quality"])],
            reviews={
                "code-quality": ReviewGateConfig(
                    name="code-quality",
                    prompt=(
                        "Review the diff for bugs, security problems, and "
                        "maintainability issues."
                    ),
                )
            },
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], base_dir: Path | None = None) -> GauntletConfig:
        project_data = dict(data.get("project", {}))
        if "cli_preference" in project_data:
            project_data["cli_preference"] = _validate_adapter_names(
                list(project_data["cli_preference"]), "project"
            )
        try:
            project = ProjectConfig(**project_data)
        except TypeError as exc:
            raise ConfigError(f"project: {exc}") from exc
        if project.rerun_new_issue_threshold not in PRIORITIES:
            raise ConfigError(
                "project: rerun_new_issue_threshold must be one of " + ", ".join(PRIORITIES)
            )
        if project.max_retries < 0:
            raise ConfigError("project: max_retries must not be negative")

        try:
            debug_log = DebugLogConfig(**data.get("debug_log", {}))
        except TypeError as exc:
            raise ConfigError(f"debug_log: {exc}") from exc

        checks = {
            name: CheckGateConfig.from_dict(name, payload)
            for name, payload in dict(data.get("checks", {})).items()
        }
        reviews = {
            name: ReviewGateConfig.from_dict(name, payload, base_dir=base_dir)
            for name, payload in dict(data.get("reviews", {})).items()
        }

        entry_points: list[EntryPointConfig] = []
        for raw in data.get("entry_points", []):
            path = str(raw.get("path", "")).strip()
            if not path:
                raise ConfigError("entry_points: every entry point needs a path")
            entry = EntryPointConfig(
                path=path,
                checks=[str(item) for item in raw.get("checks", [])],
                reviews=[str(item) for item in raw.get("reviews", [])],
                exclude=[str(item) for item in raw.get("exclude", [])],
            )
            for check_name in entry.checks:
                if check_name not in checks:
                    raise ConfigError(f"entry point '{path}': unknown check '{check_name}'")
            for review_name in entry.reviews:
                if review_name not in reviews:
                    raise ConfigError(f"entry point '{path}': unknown review '{review_name}'")
            entry_points.append(entry)

        return cls(
            project=project,
            stop_hook=StopHookConfig.from_dict(data.get("stop_hook", {})),
            debug_log=debug_log,
            entry_points=entry_points,
            checks=checks,
            reviews=reviews,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": {
                "base_branch": self.project.base_branch,
                "log_dir": self.project.log_dir,
                "max_retries": self.project.max_retries,
                "allow_parallel": self.project.allow_parallel,
                "rerun_new_issue_threshold": self.project.rerun_new_issue_threshold,
                "cli_preference": list(self.project.cli_preference),
            },
            "stop_hook": {
                "enabled": self.stop_hook.enabled,
                "run_interval_minutes": self.stop_hook.run_interval_minutes,
            },
            "debug_log": {
                "enabled": self.debug_log.enabled,
                "max_size_mb": self.debug_log.max_size_mb,
            },
            "entry_points": [entry.to_dict() for entry in self.entry_points],
            "checks": {name: check.to_dict() for name, check in self.checks.items()},
            "reviews": {name: review.to_dict() for name, review in self.reviews.items()},
        }

    def store_dir(self, repo_root: Path) -> Path:
        log_dir = Path(self.project.log_dir)
        if not log_dir.is_absolute():
            log_dir = repo_root / log_dir
        return log_dir


def _toml_key(key: str) -> str:
    if _BARE_KEY_PATTERN.match(key):
        return key
    return json.dumps(key, ensure_ascii=False)


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, Mapping):
        items = ", ".join(f"{_toml_key(key)} = {_toml_value(item)}" for key, item in value.items())
        return "{ " + items + " }" if items else "{}"
    return json.dumps(str(value), ensure_ascii=False)


def _toml_table(lines: list[str], header: str, values: Mapping[str, Any]) -> None:
    lines.append(header)
    for key, value in values.items():
        if value is None:
            continue
        lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
    lines.append("")


def dumps_toml(config: GauntletConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("project", "stop_hook", "debug_log"):
        _toml_table(lines, f"[{section}]", data[section])
    for entry in data["entry_points"]:
        _toml_table(lines, "[[entry_points]]", entry)
    for name, check in data["checks"].items():
        _toml_table(lines, f"[checks.{_toml_key(name)}]", check)
    for name, review in data["reviews"].items():
        _toml_table(lines, f"[reviews.{_toml_key(name)}]", review)
    return "\n".join(lines).strip() + "\n"


def default_config_path(repo_root: Path) -> Path:
    return repo_root / CONFIG_DIR_NAME / CONFIG_FILE_NAME


def load_config(path: Path) -> GauntletConfig:
    if not path.exists():
        raise ConfigError(f"No configuration found at {path}", path=path)
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Malformed configuration {path}: {exc}", path=path) from exc
    return GauntletConfig.from_dict(data, base_dir=path.parent)


def save_config(path: Path, config: GauntletConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")


def global_config_path(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    override = env.get("GAUNTLET_CONFIG_HOME")
    if override:
        return Path(override) / CONFIG_FILE_NAME
    return Path.home() / ".config" / "gauntlet" / CONFIG_FILE_NAME


def load_global_stop_hook(path: Path) -> StopHookConfig:
    """Global config is optional; unreadable files fall back to defaults."""
    if not path.exists():
        return StopHookConfig()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
        return StopHookConfig.from_dict(data.get("stop_hook", {}))
    except (OSError, tomllib.TOMLDecodeError, ConfigError):
        return StopHookConfig()


def _env_bool(value: str | None) -> bool | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


def _env_interval(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        parsed = int(value.strip())
    except ValueError:
        return None
    return parsed if parsed >= 0 else None


def resolve_stop_hook_settings(
    project: StopHookConfig | None,
    global_config: StopHookConfig | None = None,
    environ: Mapping[str, str] | None = None,
) -> StopHookSettings:
    env = os.environ if environ is None else environ
    settings = StopHookSettings()
    for layer in (global_config, project):
        if layer is None:
            continue
        if layer.enabled is not None:
            settings.enabled = layer.enabled
        if layer.run_interval_minutes is not None:
            settings.run_interval_minutes = layer.run_interval_minutes

    env_enabled = _env_bool(env.get("GAUNTLET_STOP_HOOK_ENABLED"))
    if env_enabled is not None:
        settings.enabled = env_enabled
    env_interval = _env_interval(env.get("GAUNTLET_STOP_HOOK_INTERVAL_MINUTES"))
    if env_interval is not None:
        settings.run_interval_minutes = env_interval
    return settings
