"""Configuration parsing for dnsguard.

Brief:
  Reads the YAML config file, merges variables from the config, environment
  and CLI (-v KEY=YAML), expands ${KEY} references, and validates the result
  with pydantic models.

Inputs:
  - YAML config files and CLI variable assignments.

Outputs:
  - AppConfig instances.
"""

from __future__ import annotations

import copy
import json
import os
import re
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from ..privacy import PRIVACY_MODES
from ..rules.store import VALID_MODES

_VAR_KEY = re.compile(r"[A-Z_][A-Z0-9_]*")
_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")


class ListenConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(default=53, ge=0, le=65535)
    tcp: bool = False
    tcp_port: Optional[int] = Field(default=None, ge=0, le=65535)


class UpstreamConfig(BaseModel):
    host: str = "8.8.8.8"
    port: int = Field(default=53, ge=1, le=65535)
    timeout_ms: int = Field(default=2000, ge=1)
    source_ip: Optional[str] = None


class CacheConfig(BaseModel):
    capacity: int = Field(default=10000, ge=1)
    ttl: int = Field(default=300, ge=1)
    tier_backoff_seconds: float = Field(default=30.0, ge=0)
    secondary: Optional[Dict[str, Any]] = None


class RulesConfig(BaseModel):
    """Inline rules plus the optional repository backing them.

    The inline lists seed the store and are the fallback when the repository
    cannot be read at startup.
    """

    mode: str = "blacklist"
    blocked: List[str] = Field(default_factory=list)
    allowed: List[str] = Field(default_factory=list)
    categories: Optional[Dict[str, List[str]]] = None
    active_categories: List[str] = Field(default_factory=list)
    repository: Optional[str] = None
    persist: bool = True
    sync_interval_seconds: float = Field(default=60.0, ge=0)

    @field_validator("mode")
    @classmethod
    def _check_mode(cls, v: str) -> str:
        value = str(v).strip().lower()
        if value not in VALID_MODES:
            raise ValueError(f"mode must be one of {', '.join(VALID_MODES)}")
        return value


class StatsConfig(BaseModel):
    history_size: int = Field(default=1000, ge=1)
    device_activity_size: int = Field(default=50, ge=1)
    top_n: int = Field(default=10, ge=1)
    active_window_seconds: float = Field(default=300.0, gt=0)
    sweep_interval_seconds: float = Field(default=30.0, gt=0)
    broadcast_queue_size: int = Field(default=1000, ge=1)


class PrivacyConfig(BaseModel):
    mode: str = "enhanced"

    @field_validator("mode")
    @classmethod
    def _check_mode(cls, v: str) -> str:
        value = str(v).strip().lower()
        if value not in PRIVACY_MODES:
            raise ValueError(f"privacy mode must be one of {', '.join(PRIVACY_MODES)}")
        return value


class WebAuthConfig(BaseModel):
    mode: str = "none"
    token: Optional[str] = None


class WebserverConfig(BaseModel):
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = Field(default=5380, ge=0, le=65535)
    auth: WebAuthConfig = Field(default_factory=WebAuthConfig)
    event_buffer_size: int = Field(default=500, ge=1)


class LoggingConfig(BaseModel):
    level: str = "info"
    stderr: bool = True
    file: Optional[str] = None
    query_log: bool = True


class AppConfig(BaseModel):
    """Validated top-level configuration."""

    listen: ListenConfig = Field(default_factory=ListenConfig)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    rules: RulesConfig = Field(default_factory=RulesConfig)
    stats: StatsConfig = Field(default_factory=StatsConfig)
    privacy: PrivacyConfig = Field(default_factory=PrivacyConfig)
    webserver: WebserverConfig = Field(default_factory=WebserverConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _is_var_key(key: str) -> bool:
    return bool(key) and _VAR_KEY.fullmatch(key) is not None


def _parse_yaml_value(text: str) -> Any:
    """Brief: Parse a CLI/environment value as YAML, keeping the raw string on errors."""

    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def parse_config_variables(
    cfg: Dict[str, Any],
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Merge config/environment/CLI variables into cfg['variables'].

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).
      - cli_vars: Optional list of CLI `KEY=YAML` assignments.
      - environ: Optional environment mapping (defaults to os.environ). Only
        DNSGUARD_-prefixed names are read, with the prefix stripped.

    Outputs:
      - dict: The merged variables mapping stored back onto cfg['variables'].

    Precedence:
      - CLI (-v/--var) overrides environment overrides config-file variables.

    Example:
      >>> cfg = {'variables': {'PORT': 53}}
      >>> parse_config_variables(cfg, cli_vars=['PORT=5353'], environ={})['PORT']
      5353
    """

    base = cfg.get("variables")
    if base is None:
        merged: Dict[str, Any] = {}
    elif isinstance(base, dict):
        merged = dict(base)
    else:
        raise ValueError("config.variables must be a mapping when present")

    env = os.environ if environ is None else environ
    for k, v in env.items():
        if not k.startswith("DNSGUARD_"):
            continue
        name = k[len("DNSGUARD_"):]
        if _is_var_key(name):
            merged[name] = _parse_yaml_value(str(v))

    for assignment in cli_vars or []:
        if "=" not in assignment:
            raise ValueError(
                "Invalid -v/--var value (expected KEY=YAML), got: %r" % assignment
            )
        k, raw = assignment.split("=", 1)
        k = k.strip()
        if not _is_var_key(k):
            raise ValueError(
                "Invalid variable name %r (must be ALL_UPPERCASE and match [A-Z_][A-Z0-9_]*)"
                % k
            )
        merged[k] = _parse_yaml_value(raw)

    cfg["variables"] = merged
    return merged


def expand_variables(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Brief: Replace ${KEY} references with values from cfg['variables'].

    Inputs:
      - cfg: Configuration mapping (mutated in-place); the variables group is
        removed after expansion.

    Outputs:
      - dict: The expanded cfg.

    Notes:
      - A string that is exactly ${KEY} is replaced by the variable's YAML
        value (list/dict/int/...); embedded references are substituted as text.
      - Unknown references are left untouched.
    """

    variables = cfg.pop("variables", None) or {}

    def _expand(obj: Any) -> Any:
        if isinstance(obj, str):
            whole = _VAR_PATTERN.fullmatch(obj)
            if whole and whole.group(1) in variables:
                return copy.deepcopy(variables[whole.group(1)])

            def _repl(match: "re.Match[str]") -> str:
                key = match.group(1)
                if key not in variables:
                    return match.group(0)
                value = variables[key]
                if isinstance(value, bool):
                    return "true" if value else "false"
                if value is None:
                    return "null"
                if isinstance(value, (int, float, str)):
                    return str(value)
                return json.dumps(value)

            return _VAR_PATTERN.sub(_repl, obj)
        if isinstance(obj, list):
            return [_expand(item) for item in obj]
        if isinstance(obj, dict):
            return {k: _expand(v) for k, v in obj.items()}
        return obj

    for key in list(cfg.keys()):
        cfg[key] = _expand(cfg[key])
    return cfg


def build_config(cfg: Dict[str, Any]) -> AppConfig:
    """Brief: Validate an expanded config mapping.

    Raises:
      - ValueError: with pydantic's error summary when validation fails.
    """

    try:
        return AppConfig.model_validate(cfg)
    except PydanticValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc


def parse_config_file(
    config_path: str,
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> AppConfig:
    """Brief: Read, variable-merge, expand and validate a YAML config file.

    Inputs:
      - config_path: Path to the YAML configuration file.
      - cli_vars: Optional list of CLI `KEY=YAML` assignments (from -v/--var).
      - environ: Optional environment mapping for DNSGUARD_* variables.

    Outputs:
      - AppConfig.

    Raises:
      - ValueError: When the file is not a mapping, variables are invalid, or
        validation fails.
      - OSError: When the file cannot be read.
    """

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(cfg, dict):
        raise ValueError("Configuration root must be a mapping")

    parse_config_variables(cfg, cli_vars=list(cli_vars or []), environ=environ)
    expand_variables(cfg)
    return build_config(cfg)
