"""Run configuration: defaults, optional YAML config file, validation."""

from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

MIN_CONCURRENT = 1
MAX_CONCURRENT = 5

DEFAULT_COMMAND = [
    "gh", "ado2gh", "migrate-repo",
    "--ado-org", "{org}",
    "--ado-team-project", "{teamproject}",
    "--ado-repo", "{repo}",
    "--github-org", "{github_org}",
    "--github-repo", "{github_repo}",
    "--target-repo-visibility", "{gh_repo_visibility}",
]


class ConfigError(ValueError):
    """Raised for invalid configuration, before any task is started."""


@dataclass
class RunConfig:
    tasks_path: str = "repos.csv"
    status_path: str = "repos_with_status.csv"
    log_dir: str = "./logs"
    max_concurrent: int = 3
    poll_interval: float = 5.0
    task_timeout: float | None = None
    run_timeout: float | None = None
    command: list[str] = field(default_factory=lambda: list(DEFAULT_COMMAND))

    def validate(self) -> None:
        validate_max_concurrent(self.max_concurrent)
        if not _is_number(self.poll_interval) or self.poll_interval <= 0:
            raise ConfigError(f"poll_interval must be positive, got {self.poll_interval!r}")
        for name in ("task_timeout", "run_timeout"):
            value = getattr(self, name)
            if value is not None and (not _is_number(value) or value <= 0):
                raise ConfigError(f"{name} must be positive, got {value!r}")
        if not isinstance(self.command, list) or not self.command or not all(isinstance(part, str) for part in self.command):
            raise ConfigError("command must be a non-empty list of strings")


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_max_concurrent(value: int) -> None:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"max_concurrent must be an integer, got {value!r}")
    if not MIN_CONCURRENT <= value <= MAX_CONCURRENT:
        raise ConfigError(
            f"max_concurrent must be between {MIN_CONCURRENT} and {MAX_CONCURRENT}, got {value}"
        )


def load_config(config_path: str | Path) -> RunConfig:
    """Read a YAML config file and return a RunConfig seeded with its values.

    The file must contain a mapping whose keys are RunConfig field names.
    Missing keys keep their defaults; unknown keys are a ConfigError.
    """
    config_path = Path(config_path)
    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {config_path}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Could not read {config_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Could not parse {config_path}: {exc}") from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")

    known = {f.name for f in fields(RunConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown config key(s) in {config_path}: {', '.join(unknown)}")

    config = RunConfig(**data)
    config.validate()
    return config
