"""``storycycle.yaml`` loading and validation."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from storycycle.domain.steps import AGENT_PROFILES
from storycycle.errors import ConfigurationError
from storycycle.orchestration.agent_session import SessionSettings

__all__ = [
    "AgentConfig",
    "CONFIG_FILENAME",
    "CycleConfig",
    "DEFAULT_CONFIG",
    "GitConfig",
    "ProjectConfig",
    "StateConfig",
    "StorycycleConfig",
    "load_config",
    "merge_overrides",
]


CONFIG_FILENAME = "storycycle.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "project": {
        "path": ".",
        "profile": "bmm",
        "stories_dir": "_bmad-output/implementation-artifacts",
    },
    "cycle": {
        "review_rounds": 1,
        "max_auto_replies": 5,
        "agent_step_timeout": None,
        "settle_delay": 0.15,
        "queue_settle_delay": 0.5,
        "recheck_delay": 3.0,
        "minimal_output_chars": 200,
        "classifier_window": 3000,
    },
    "git": {
        "base_branch": "main",
        "enable_branches": True,
        "epic_branches": False,
    },
    "agent": {
        "tool": "claude-code",
        "command": "claude",
        "model": None,
    },
    "state": {
        "dir": ".storycycle/state",
    },
}


@dataclass(frozen=True)
class ProjectConfig:
    path: Path = Path(".")
    profile: str = "bmm"
    stories_dir: Path = Path("_bmad-output/implementation-artifacts")


@dataclass(frozen=True)
class CycleConfig:
    review_rounds: int = 1
    max_auto_replies: Optional[int] = 5
    agent_step_timeout: Optional[float] = None
    settle_delay: float = 0.15
    queue_settle_delay: float = 0.5
    recheck_delay: float = 3.0
    minimal_output_chars: int = 200
    classifier_window: int = 3000

    def session_settings(self) -> SessionSettings:
        return SessionSettings(
            settle_delay=self.settle_delay,
            recheck_delay=self.recheck_delay,
            minimal_output_chars=self.minimal_output_chars,
            classifier_window=self.classifier_window,
            max_auto_replies=self.max_auto_replies,
            step_timeout=self.agent_step_timeout,
        )


@dataclass(frozen=True)
class GitConfig:
    base_branch: str = "main"
    enable_branches: bool = True
    epic_branches: bool = False


@dataclass(frozen=True)
class AgentConfig:
    tool: str = "claude-code"
    command: str = "claude"
    model: Optional[str] = None


@dataclass(frozen=True)
class StateConfig:
    dir: Path = Path(".storycycle/state")


@dataclass(frozen=True)
class StorycycleConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    cycle: CycleConfig = field(default_factory=CycleConfig)
    git: GitConfig = field(default_factory=GitConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    state: StateConfig = field(default_factory=StateConfig)
    source: Optional[Path] = None

    @property
    def project_path(self) -> Path:
        return self.project.path

    @property
    def stories_path(self) -> Path:
        return self.project.path / self.project.stories_dir

    @property
    def state_path(self) -> Path:
        return self.project.path / self.state.dir

    @classmethod
    def from_mapping(
        cls, data: Mapping[str, Any], *, base_dir: Optional[Path] = None
    ) -> "StorycycleConfig":
        merged = merge_overrides(DEFAULT_CONFIG, dict(data or {}))
        project = _section(merged, "project")
        cycle = _section(merged, "cycle")
        git = _section(merged, "git")
        agent = _section(merged, "agent")
        state = _section(merged, "state")

        project_path = Path(str(project.get("path") or "."))
        if base_dir is not None and not project_path.is_absolute():
            project_path = base_dir / project_path

        profile = str(project.get("profile") or "bmm").strip().lower()
        if profile not in AGENT_PROFILES:
            raise ConfigurationError(
                f"project.profile must be one of {sorted(AGENT_PROFILES)}, got {profile!r}"
            )

        return cls(
            project=ProjectConfig(
                path=project_path,
                profile=profile,
                stories_dir=Path(str(project.get("stories_dir") or ".")),
            ),
            cycle=CycleConfig(
                review_rounds=_int(cycle, "cycle.review_rounds", minimum=0),
                max_auto_replies=_optional_int(cycle, "cycle.max_auto_replies"),
                agent_step_timeout=_optional_float(cycle, "cycle.agent_step_timeout"),
                settle_delay=_float(cycle, "cycle.settle_delay"),
                queue_settle_delay=_float(cycle, "cycle.queue_settle_delay"),
                recheck_delay=_float(cycle, "cycle.recheck_delay"),
                minimal_output_chars=_int(cycle, "cycle.minimal_output_chars", minimum=0),
                classifier_window=_int(cycle, "cycle.classifier_window", minimum=1),
            ),
            git=GitConfig(
                base_branch=_str(git, "git.base_branch"),
                enable_branches=_bool(git, "git.enable_branches"),
                epic_branches=_bool(git, "git.epic_branches"),
            ),
            agent=AgentConfig(
                tool=_str(agent, "agent.tool"),
                command=_str(agent, "agent.command"),
                model=str(agent["model"]) if agent.get("model") else None,
            ),
            state=StateConfig(dir=Path(_str(state, "state.dir"))),
        )


def merge_overrides(base: Mapping[str, Any], overrides: Optional[Mapping[str, Any]]) -> dict:
    """Deep-merge ``overrides`` into a copy of ``base``."""

    def merge(target: dict, updates: Mapping[str, Any]) -> None:
        for key, value in updates.items():
            if isinstance(value, Mapping) and isinstance(target.get(key), dict):
                merge(target[key], value)
            else:
                target[key] = deepcopy(value)

    merged = deepcopy(dict(base))
    if overrides:
        merge(merged, overrides)
    return merged


def load_config(
    path: Optional[Union[str, Path]] = None,
    *,
    overrides: Optional[Mapping[str, Any]] = None,
) -> StorycycleConfig:
    """Load ``storycycle.yaml`` (or ``path``) and apply CLI ``overrides``.

    A missing default file yields the built-in defaults; an explicit ``path``
    that does not exist is an error.  Relative project paths resolve against
    the directory holding the configuration file.
    """

    if path is None:
        config_path = Path(CONFIG_FILENAME)
        if not config_path.exists():
            return StorycycleConfig.from_mapping(merge_overrides({}, overrides))
    else:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {exc}") from exc
    if not isinstance(loaded, Mapping):
        raise ConfigurationError(f"{config_path} must contain a mapping at the top level")

    config = StorycycleConfig.from_mapping(
        merge_overrides(loaded, overrides), base_dir=config_path.resolve().parent
    )
    return replace(config, source=config_path)


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"{name} must be a mapping")
    return value


def _int(section: Mapping[str, Any], key: str, *, minimum: Optional[int] = None) -> int:
    value = section.get(key.split(".")[-1])
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")
    if minimum is not None and value < minimum:
        raise ConfigurationError(f"{key} must be at least {minimum}, got {value}")
    return value


def _optional_int(section: Mapping[str, Any], key: str) -> Optional[int]:
    if section.get(key.split(".")[-1]) is None:
        return None
    return _int(section, key, minimum=0)


def _float(section: Mapping[str, Any], key: str) -> float:
    value = section.get(key.split(".")[-1])
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{key} must be a number, got {value!r}")
    if value < 0:
        raise ConfigurationError(f"{key} must not be negative, got {value}")
    return float(value)


def _optional_float(section: Mapping[str, Any], key: str) -> Optional[float]:
    if section.get(key.split(".")[-1]) is None:
        return None
    value = _float(section, key)
    if value == 0:
        raise ConfigurationError(f"{key} must be positive when set")
    return value


def _bool(section: Mapping[str, Any], key: str) -> bool:
    value = section.get(key.split(".")[-1])
    if not isinstance(value, bool):
        raise ConfigurationError(f"{key} must be true or false, got {value!r}")
    return value


def _str(section: Mapping[str, Any], key: str) -> str:
    value = section.get(key.split(".")[-1])
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"{key} must be a non-empty string")
    return value.strip()
