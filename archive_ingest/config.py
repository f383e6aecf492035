from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config_schema import AppConfig
from .errors import ConfigError
from .post import SourceType


def load_config(path: str | Path | None) -> AppConfig:
    """
    Load a YAML config file and validate it into a typed AppConfig.

    No path means the built-in defaults. Raises ConfigError with one line per
    validation problem.
    """
    if path is None:
        return AppConfig()

    p = Path(path)
    data = _read_yaml_mapping(p)

    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_pydantic_errors(e, str(p))) from e


def _read_yaml_mapping(p: Path) -> dict[str, Any]:
    if not p.is_file():
        raise ConfigError(f"Config file not found: {p}")

    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {p}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML in {p}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML in {p} must be a mapping of sections")
    return data


def with_account(config: AppConfig, source_type: SourceType | str, account: str | None) -> AppConfig:
    """
    Return a copy of config with the owning account for one source replaced.

    The value goes through the same normalization as the YAML file; Twilog
    shares the Twitter account.
    """
    if account is None:
        return config

    field = SourceType.parse(source_type).record_type
    if field is None:
        raise ConfigError(f"--account does not apply to {SourceType.parse(source_type).value} imports")
    accounts = config.accounts.model_dump()
    accounts[field] = account
    try:
        return config.model_copy(update={"accounts": type(config.accounts).model_validate(accounts)})
    except ValidationError as e:
        raise ConfigError(_format_pydantic_errors(e, "--account")) from e


def config_sha256(config: AppConfig) -> str:
    """Stable SHA-256 of the effective config, recorded on every import run."""
    payload = json.dumps(
        config.model_dump(mode="json"),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def _format_pydantic_errors(err: ValidationError, origin: str) -> str:
    lines: list[str] = [f"Invalid configuration in {origin}:"]
    for item in err.errors():
        loc = ".".join(str(part) for part in item.get("loc", [])) or "<root>"
        lines.append(f"- {loc}: {item.get('msg', 'invalid value')}")
    return "\n".join(lines)
