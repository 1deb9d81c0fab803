from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from .config_schema import AppConfig
from .errors import ConfigError


@dataclass(frozen=True)
class RuntimeSecrets:
    apify_token: str | None = None


def _read_yaml_mapping(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except OSError as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {path} is not valid YAML: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must hold a mapping at the top level")
    return data


def config_from_mapping(data: Mapping[str, Any], *, source: str = "<mapping>") -> AppConfig:
    try:
        return AppConfig.model_validate(dict(data))
    except ValidationError as e:
        raise ConfigError(_describe_validation_error(e, source)) from e


def load_config(path: str | Path) -> AppConfig:
    """
    Read a YAML config file into a validated AppConfig.

    Every failure (missing file, bad YAML, wrong shape, invalid field) is a ConfigError
    whose message lists the offending fields.
    """
    p = Path(path)
    return config_from_mapping(_read_yaml_mapping(p), source=str(p))


def resolve_runtime_secrets(
    config: AppConfig, *, environ: Mapping[str, str] | None = None
) -> RuntimeSecrets:
    """Look up the Apify token. Only Apify-backed runs need one."""
    env = os.environ if environ is None else environ
    name = config.apify.token_env
    token = (env.get(name) or "").strip()

    if not token and config.apify.enabled:
        raise ConfigError(
            f"Missing required environment variables: {name} "
            "(needed for apify.push_dataset / apify.state_store_name)"
        )

    return RuntimeSecrets(apify_token=token or None)


def config_sha256(config: AppConfig) -> str:
    """Hex digest of the canonical JSON form of `config`; identifies resumable runs."""
    canonical = json.dumps(
        config.model_dump(mode="json"),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _describe_validation_error(err: ValidationError, source: str) -> str:
    problems = []
    for item in err.errors():
        where = ".".join(str(part) for part in item.get("loc", ())) or "<root>"
        problems.append(f"- {where}: {item.get('msg', 'invalid value')}")
    return "\n".join([f"Invalid configuration in {source}:", *problems])
