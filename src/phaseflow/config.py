from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

WorkflowMode = Literal["simple", "full"]


class ConfigError(ValueError):
    """Raised when a configuration file contains unusable values."""


@dataclass(slots=True)
class SwarmConfig:
    roles: list[str] = field(default_factory=list)
    max_agents: int | None = None
    agent: str | None = None
    role_agents: dict[str, str] = field(default_factory=dict)
    role_prompts: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SwarmConfig:
        config = cls(
            roles=[str(role) for role in data.get("roles", [])],
            max_agents=data.get("max_agents"),
            agent=data.get("agent"),
            role_agents=dict(data.get("role_agents", {})),
            role_prompts=dict(data.get("role_prompts", {})),
        )
        if config.max_agents is not None and int(config.max_agents) < 1:
            raise ConfigError(f"max_agents must be at least 1, got {config.max_agents}")
        return config

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"roles": list(self.roles)}
        if self.max_agents is not None:
            payload["max_agents"] = self.max_agents
        if self.agent:
            payload["agent"] = self.agent
        if self.role_agents:
            payload["role_agents"] = dict(self.role_agents)
        if self.role_prompts:
            payload["role_prompts"] = dict(self.role_prompts)
        return payload


@dataclass(slots=True)
class ReviewConfig:
    agent: str | None = None
    role_agents: dict[str, str] = field(default_factory=dict)
    role_prompts: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReviewConfig:
        return cls(
            agent=data.get("agent"),
            role_agents=dict(data.get("role_agents", {})),
            role_prompts=dict(data.get("role_prompts", {})),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.agent:
            payload["agent"] = self.agent
        if self.role_agents:
            payload["role_agents"] = dict(self.role_agents)
        if self.role_prompts:
            payload["role_prompts"] = dict(self.role_prompts)
        return payload


@dataclass(slots=True)
class WorkflowConfig:
    mode: WorkflowMode = "simple"
    auto_code_review: bool = True
    coding_agent: str | None = None
    planning_swarm: SwarmConfig | None = None
    implementation_swarm: SwarmConfig | None = None
    plan_review: ReviewConfig = field(default_factory=ReviewConfig)
    code_review: ReviewConfig = field(default_factory=ReviewConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowConfig:
        mode = data.get("mode", "simple")
        if mode not in {"simple", "full"}:
            raise ConfigError(f"Unsupported workflow mode: {mode}")
        planning = data.get("planning_swarm")
        implementation = data.get("implementation_swarm")
        return cls(
            mode=mode,
            auto_code_review=bool(data.get("auto_code_review", True)),
            coding_agent=data.get("coding_agent"),
            planning_swarm=SwarmConfig.from_dict(planning) if planning else None,
            implementation_swarm=(
                SwarmConfig.from_dict(implementation) if implementation else None
            ),
            plan_review=ReviewConfig.from_dict(data.get("plan_review", {})),
            code_review=ReviewConfig.from_dict(data.get("code_review", {})),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "mode": self.mode,
            "auto_code_review": self.auto_code_review,
        }
        if self.coding_agent:
            payload["coding_agent"] = self.coding_agent
        if self.planning_swarm is not None:
            payload["planning_swarm"] = self.planning_swarm.to_dict()
        if self.implementation_swarm is not None:
            payload["implementation_swarm"] = self.implementation_swarm.to_dict()
        plan_review = self.plan_review.to_dict()
        if plan_review:
            payload["plan_review"] = plan_review
        code_review = self.code_review.to_dict()
        if code_review:
            payload["code_review"] = code_review
        return payload


@dataclass(slots=True)
class ProjectConfig:
    path: str
    name: str = ""
    agent: str | None = None
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)

    @classmethod
    def from_dict(cls, project_id: str, data: dict[str, Any]) -> ProjectConfig:
        if "path" not in data:
            raise ConfigError(f"Project '{project_id}' is missing a path.")
        return cls(
            path=str(data["path"]),
            name=str(data.get("name", project_id)),
            agent=data.get("agent"),
            workflow=WorkflowConfig.from_dict(data.get("workflow", {})),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"path": self.path}
        if self.name:
            payload["name"] = self.name
        if self.agent:
            payload["agent"] = self.agent
        payload["workflow"] = self.workflow.to_dict()
        return payload


@dataclass(slots=True)
class DefaultsConfig:
    agent: str = "claude-code"
    state_dir: str = ".phaseflow/sessions"


@dataclass(slots=True)
class OrchestratorConfig:
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)
    projects: dict[str, ProjectConfig] = field(default_factory=dict)
    config_path: Path | None = None

    @classmethod
    def default(cls) -> OrchestratorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict, config_path: Path | None = None) -> OrchestratorConfig:
        projects = {
            str(project_id): ProjectConfig.from_dict(str(project_id), payload)
            for project_id, payload in data.get("projects", {}).items()
        }
        return cls(
            defaults=DefaultsConfig(**data.get("defaults", {})),
            projects=projects,
            config_path=config_path,
        )

    def to_dict(self) -> dict:
        return {
            "defaults": {
                "agent": self.defaults.agent,
                "state_dir": self.defaults.state_dir,
            },
            "projects": {
                project_id: project.to_dict() for project_id, project in self.projects.items()
            },
        }

    def sessions_dir(self, project_id: str) -> Path:
        project = self.projects[project_id]
        state_dir = Path(self.defaults.state_dir)
        if state_dir.is_absolute():
            return state_dir / project_id
        return Path(project.path) / state_dir


def _toml_key(key: str) -> str:
    if key.replace("-", "").replace("_", "").isalnum():
        return key
    return json.dumps(key)


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
    if isinstance(value, dict):
        items = ", ".join(f"{_toml_key(k)} = {_toml_value(v)}" for k, v in value.items())
        return "{ " + items + " }" if items else "{}"
    return json.dumps(str(value), ensure_ascii=False)


def _dump_table(lines: list[str], header: str, table: dict[str, Any]) -> None:
    scalars = {
        key: value
        for key, value in table.items()
        if not isinstance(value, dict) or key in {"role_agents", "role_prompts"}
    }
    nested = {key: value for key, value in table.items() if key not in scalars}
    lines.append(f"[{header}]")
    for key, value in scalars.items():
        lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
    lines.append("")
    for key, value in nested.items():
        _dump_table(lines, f"{header}.{_toml_key(key)}", value)


def dumps_toml(config: OrchestratorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    _dump_table(lines, "defaults", data["defaults"])
    for project_id, project in data["projects"].items():
        _dump_table(lines, f"projects.{_toml_key(project_id)}", project)
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> OrchestratorConfig:
    if not path.exists():
        config = OrchestratorConfig.default()
        config.config_path = path
        return config
    data = tomllib.loads(path.read_text(encoding="utf-8"))
    return OrchestratorConfig.from_dict(data, config_path=path)


def save_config(path: Path, config: OrchestratorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
