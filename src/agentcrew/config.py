from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from agentcrew.errors import ValidationError

GeneratorName = Literal["openai", "template"]
HostBackendName = Literal["github", "memory"]
MergeMethod = Literal["merge", "squash", "rebase"]

GENERATOR_NAMES = {"openai", "template"}
HOST_BACKENDS = {"github", "memory"}
MERGE_METHODS = {"merge", "squash", "rebase"}


@dataclass(slots=True)
class SchedulerConfig:
    min_delay_seconds: float = 5.0
    max_delay_seconds: float = 15.0
    step_pause_seconds: float = 3.0


@dataclass(slots=True)
class ReviewConfig:
    start_delay_seconds: float = 5.0
    stagger_seconds: float = 3.0
    settle_seconds: float = 5.0
    merge_method: MergeMethod = "squash"
    default_repository: str = "ai-test-repo"
    default_channel: str = "general"


@dataclass(slots=True)
class NarrationConfig:
    min_message_delay_seconds: float = 3.0
    max_message_delay_seconds: float = 10.0
    history_limit: int = 20
    recent_events_limit: int = 5


@dataclass(slots=True)
class GeneratorConfig:
    primary: GeneratorName = "openai"
    fallback: GeneratorName = "template"
    model: str = "gpt-4o-mini"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


@dataclass(slots=True)
class HostConfig:
    backend: HostBackendName = "github"
    owner: str = ""
    token_env: str = "GITHUB_TOKEN"
    api_url: str = "https://api.github.com"
    base_branch: str = "main"


@dataclass(slots=True)
class CrewConfig:
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    narration: NarrationConfig = field(default_factory=NarrationConfig)
    generator: GeneratorConfig = field(default_factory=GeneratorConfig)
    host: HostConfig = field(default_factory=HostConfig)

    @classmethod
    def default(cls) -> CrewConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> CrewConfig:
        return cls(
            scheduler=SchedulerConfig(**data.get("scheduler", {})),
            review=ReviewConfig(**data.get("review", {})),
            narration=NarrationConfig(**data.get("narration", {})),
            generator=GeneratorConfig(**data.get("generator", {})),
            host=HostConfig(**data.get("host", {})),
        )

    def validate(self) -> CrewConfig:
        if self.scheduler.max_delay_seconds < self.scheduler.min_delay_seconds:
            raise ValidationError("scheduler.max_delay_seconds must be >= min_delay_seconds")
        if self.narration.max_message_delay_seconds < self.narration.min_message_delay_seconds:
            raise ValidationError(
                "narration.max_message_delay_seconds must be >= min_message_delay_seconds"
            )
        if self.review.merge_method not in MERGE_METHODS:
            raise ValidationError(f"Unsupported merge method: {self.review.merge_method}")
        for slot in (self.generator.primary, self.generator.fallback):
            if slot not in GENERATOR_NAMES:
                raise ValidationError(f"Unsupported generator backend: {slot}")
        if self.host.backend not in HOST_BACKENDS:
            raise ValidationError(f"Unsupported repository host backend: {self.host.backend}")
        if self.narration.recent_events_limit < 1 or self.narration.history_limit < 1:
            raise ValidationError("narration limits must be positive")
        return self

    def to_dict(self) -> dict:
        return {
            "scheduler": {
                "min_delay_seconds": self.scheduler.min_delay_seconds,
                "max_delay_seconds": self.scheduler.max_delay_seconds,
                "step_pause_seconds": self.scheduler.step_pause_seconds,
            },
            "review": {
                "start_delay_seconds": self.review.start_delay_seconds,
                "stagger_seconds": self.review.stagger_seconds,
                "settle_seconds": self.review.settle_seconds,
                "merge_method": self.review.merge_method,
                "default_repository": self.review.default_repository,
                "default_channel": self.review.default_channel,
            },
            "narration": {
                "min_message_delay_seconds": self.narration.min_message_delay_seconds,
                "max_message_delay_seconds": self.narration.max_message_delay_seconds,
                "history_limit": self.narration.history_limit,
                "recent_events_limit": self.narration.recent_events_limit,
            },
            "generator": {
                "primary": self.generator.primary,
                "fallback": self.generator.fallback,
                "model": self.generator.model,
                "max_retries": self.generator.max_retries,
                "retry_backoff_seconds": self.generator.retry_backoff_seconds,
                "timeout_seconds": self.generator.timeout_seconds,
            },
            "host": {
                "backend": self.host.backend,
                "owner": self.host.owner,
                "token_env": self.host.token_env,
                "api_url": self.host.api_url,
                "base_branch": self.host.base_branch,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: CrewConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["scheduler", "review", "narration", "generator", "host"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> CrewConfig:
    if not path.exists():
        return CrewConfig.default()
    try:
        payload = tomllib.loads(path.read_text(encoding="utf-8"))
        config = CrewConfig.from_dict(payload)
    except (tomllib.TOMLDecodeError, TypeError) as exc:
        raise ValidationError(f"Invalid configuration file {path}: {exc}") from exc
    return config.validate()


def save_config(path: Path, config: CrewConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
