from __future__ import annotations

import json
import math
import tomllib
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any


def clamp_int(value: Any, minimum: int, maximum: int, fallback: int) -> int:
    """Round a loosely-typed number into ``[minimum, maximum]``.

    Anything that is not a finite number (or a numeric string) yields ``fallback``.
    """
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value.strip())
        except ValueError:
            return fallback
    else:
        return fallback
    if not math.isfinite(numeric):
        return fallback
    # JS-style rounding: halves round up.
    rounded = math.floor(numeric + 0.5)
    return min(max(rounded, minimum), maximum)


@dataclass(slots=True)
class RunSettings:
    max_steps: int = 12
    max_step_attempts: int = 2
    max_replan_calls: int = 2
    replan_every_steps: int = 2
    max_self_checks: int = 4
    loop_guard_threshold: int = 2
    loop_guard_cooldown_steps: int = 2
    loop_backoff_base_ms: int = 2000
    loop_backoff_max_ms: int = 12000

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


SETTING_BOUNDS: dict[str, tuple[int, int]] = {
    "max_steps": (1, 20),
    "max_step_attempts": (1, 5),
    "max_replan_calls": (0, 6),
    "replan_every_steps": (1, 10),
    "max_self_checks": (0, 8),
    "loop_guard_threshold": (1, 5),
    "loop_guard_cooldown_steps": (0, 10),
    "loop_backoff_base_ms": (250, 20000),
    "loop_backoff_max_ms": (1000, 60000),
}


@dataclass(slots=True)
class RunPreferences:
    require_human_approval: bool = True
    ignore_robots_txt: bool = False
    planner_model: str | None = None
    loop_guard_model: str | None = None
    approval_gate_model: str | None = None
    self_check_model: str | None = None
    memory_summarization_model: str | None = None
    verification_model: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


DEFAULT_SETTINGS = RunSettings()


def _section(plan_state: Any, key: str) -> dict[str, Any]:
    if not isinstance(plan_state, dict):
        return {}
    value = plan_state.get(key)
    return value if isinstance(value, dict) else {}


def resolve_settings(plan_state: Any, defaults: RunSettings | None = None) -> RunSettings:
    base = defaults or RunSettings()
    raw = _section(plan_state, "settings")
    resolved: dict[str, int] = {}
    for name, (minimum, maximum) in SETTING_BOUNDS.items():
        fallback = clamp_int(getattr(base, name), minimum, maximum, getattr(DEFAULT_SETTINGS, name))
        resolved[name] = clamp_int(raw.get(name), minimum, maximum, fallback)
    return RunSettings(**resolved)


def resolve_preferences(plan_state: Any) -> RunPreferences:
    raw = _section(plan_state, "preferences")
    preferences = RunPreferences()
    if "require_human_approval" in raw:
        preferences.require_human_approval = bool(raw["require_human_approval"])
    preferences.ignore_robots_txt = bool(raw.get("ignore_robots_txt", False))
    for item in fields(RunPreferences):
        if not item.name.endswith("_model"):
            continue
        value = raw.get(item.name)
        if isinstance(value, str) and value.strip():
            setattr(preferences, item.name, value.strip())
    return preferences


@dataclass(slots=True)
class BackendConfig:
    base_url: str = "http://localhost:11434/v1"
    api_key_env: str = "RUNPILOT_API_KEY"
    model: str = "qwen3:8b"
    fallback_base_url: str = ""
    fallback_model: str = ""
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


@dataclass(slots=True)
class ModelsConfig:
    planner: str = ""
    loop_guard: str = ""
    approval_gate: str = ""
    self_check: str = ""
    summarization: str = ""
    verification: str = ""


@dataclass(slots=True)
class QueueConfig:
    poll_interval_seconds: float = 2.0
    stuck_run_threshold_seconds: int = 600
    list_limit: int = 20


@dataclass(slots=True)
class AgentConfig:
    max_steps: int = 12
    max_step_attempts: int = 2
    max_replan_calls: int = 2
    replan_every_steps: int = 2
    max_self_checks: int = 4
    loop_guard_threshold: int = 2
    loop_guard_cooldown_steps: int = 2
    loop_backoff_base_ms: int = 2000
    loop_backoff_max_ms: int = 12000
    summary_interval: int = 5
    history_window: int = 10
    plan_refinement: bool = True

    def run_settings(self) -> RunSettings:
        return resolve_settings(
            {"settings": {name: getattr(self, name) for name in SETTING_BOUNDS}}
        )


@dataclass(slots=True)
class StateConfig:
    directory: str = ".runpilot"
    agent_tables_ready: bool = True


@dataclass(slots=True)
class ExecutorConfig:
    factory: str = "runpilot.executor:NullExecutor"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class PilotConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    state: StateConfig = field(default_factory=StateConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> PilotConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PilotConfig:
        return cls(
            backend=BackendConfig(**data.get("backend", {})),
            models=ModelsConfig(**data.get("models", {})),
            queue=QueueConfig(**data.get("queue", {})),
            agent=AgentConfig(**data.get("agent", {})),
            state=StateConfig(**data.get("state", {})),
            executor=ExecutorConfig(**data.get("executor", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "backend": asdict(self.backend),
            "models": asdict(self.models),
            "queue": asdict(self.queue),
            "agent": asdict(self.agent),
            "state": asdict(self.state),
            "executor": asdict(self.executor),
            "logging": asdict(self.logging),
        }

    def model_for(self, role: str) -> str:
        override = getattr(self.models, role, "")
        return override.strip() if isinstance(override, str) and override.strip() else self.backend.model


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
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: PilotConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["backend", "models", "queue", "agent", "state", "executor", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PilotConfig:
    if not path.exists():
        return PilotConfig.default()
    return PilotConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: PilotConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
