"""
Ventricle configuration: loads and validates ventricle.yaml
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from ventricle.fetcher import USER_AGENT

_ENV_REF = re.compile(r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<fallback>[^}]*))?\}")


@dataclass
class PulsesConfig:
    dir: str = "~/.ventricle/pulses"
    extension: str = ".pulse"


@dataclass
class StateConfig:
    dir: str = "~/.ventricle/state"
    records_file: str = "pulses.json"
    items_file: str = "pulse-items.json"


@dataclass
class SchedulerConfig:
    tick_seconds: float = 60
    event_settle_seconds: float = 0.25  # wait for editors to finish writing
    run_on_start: bool = True


@dataclass
class HttpConfig:
    timeout_seconds: float = 300  # aiohttp's own default
    user_agent: str = USER_AGENT


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str = "~/.ventricle/logs/ventricle.log"


@dataclass
class HealthConfig:
    enabled: bool = False
    port: int = 9730


@dataclass
class NotifyConfig:
    webhook_url: str = ""
    webhook_token: str = ""


@dataclass
class VentricleConfig:
    pulses: PulsesConfig = field(default_factory=PulsesConfig)
    state: StateConfig = field(default_factory=StateConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "VentricleConfig":
        """Load config from YAML file, falling back to defaults."""
        if config_path is None:
            # Search order: ./ventricle.yaml, ~/.ventricle/ventricle.yaml
            candidates = [
                Path("ventricle.yaml"),
                Path("~/.ventricle/ventricle.yaml").expanduser(),
            ]
            for candidate in candidates:
                if candidate.exists():
                    config_path = str(candidate)
                    break

        if config_path and Path(config_path).exists():
            with open(config_path) as f:
                raw = yaml.safe_load(f) or {}
            if not isinstance(raw, dict):
                raise ValueError(f"Config file {config_path} must contain a mapping")
            return cls._from_dict(raw)

        return cls()

    @classmethod
    def _from_dict(cls, data: dict) -> "VentricleConfig":
        """Build config section by section; unknown keys are ignored."""
        config = cls()

        sections = {
            "pulses": PulsesConfig,
            "state": StateConfig,
            "scheduler": SchedulerConfig,
            "http": HttpConfig,
            "logging": LoggingConfig,
            "health": HealthConfig,
            "notify": NotifyConfig,
        }
        for name, section_cls in sections.items():
            section_data = data.get(name)
            if not isinstance(section_data, dict):
                continue
            current = getattr(config, name)
            setattr(config, name, section_cls(**{
                k: cls._resolve_env(section_data.get(k, getattr(current, k)))
                for k in section_cls.__dataclass_fields__
            }))

        config._validate()
        return config

    def _validate(self):
        """Validate config values."""
        errors = []

        if not self.pulses.dir:
            errors.append("pulses.dir must be set")
        if not self.pulses.extension.startswith("."):
            errors.append(f"pulses.extension must start with '.', got '{self.pulses.extension}'")
        if not self.state.dir:
            errors.append("state.dir must be set")
        if self.scheduler.tick_seconds <= 0:
            errors.append("scheduler.tick_seconds must be positive")
        if self.scheduler.event_settle_seconds < 0:
            errors.append("scheduler.event_settle_seconds must be non-negative")
        if self.http.timeout_seconds <= 0:
            errors.append("http.timeout_seconds must be positive")
        if not (1 <= self.health.port <= 65535):
            errors.append(f"health.port must be 1-65535, got {self.health.port}")

        if errors:
            raise ValueError("Config validation errors:\n" + "\n".join(f"  - {e}" for e in errors))

    @classmethod
    def _resolve_env(cls, value, required: bool = False):
        """Expand ``${NAME}`` and ``${NAME:-fallback}`` references in a string value.

        References may sit anywhere in the string. A reference to an unset
        variable uses its fallback, or stays in the text when it has none.
        With ``required`` an unset variable without fallback is an error.
        Non-string values pass through.
        """
        if not isinstance(value, str):
            return value

        def _expand(match):
            name, fallback = match.group("name"), match.group("fallback")
            if name in os.environ:
                return os.environ[name]
            if fallback is not None:
                return fallback
            if required:
                raise ValueError(f"Environment variable {name} is not set (referenced in ventricle.yaml)")
            return match.group(0)

        return _ENV_REF.sub(_expand, value)

    @property
    def pulses_dir(self) -> Path:
        return Path(self.pulses.dir).expanduser()

    @property
    def state_dir(self) -> Path:
        return Path(self.state.dir).expanduser()
