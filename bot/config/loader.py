from __future__ import annotations

import logging
import os
import sys
from typing import Any, Mapping

import yaml
from dotenv import load_dotenv

from .validator import ConfigValidationError, validate_config


DEFAULT_CONFIG_FILE = "config.yaml"
CONFIG_ENV_VAR = "CONFIG_PATH"

# env var -> config key; .env values win over the YAML file
ENV_OVERRIDES = {
    "BOT_TOKEN": "bot_token",
    "OWNER_ID": "owner_id",
    "CHANNEL_ID": "alert_channel_id",
}


def get_config_path() -> str:
    """CONFIG_PATH if set, else ./config.yaml."""
    return os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE


def read_yaml(path: str) -> dict[str, Any]:
    """
    Read a YAML mapping from `path`.

    Exits the process (code 1) when the file is missing, unparsable or not a
    mapping; there is nothing useful the bot can do without its config.
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        logging.error("Config file not found: %s", path)
        sys.exit(1)
    except yaml.YAMLError as e:
        logging.error("Could not parse %s: %s", path, e)
        sys.exit(1)

    data = data or {}
    if not isinstance(data, dict):
        logging.error("%s must contain a mapping at the top level, got %s", path, type(data).__name__)
        sys.exit(1)
    return data


def _parse_env_id(raw: str) -> int | str:
    # OWNER_ID is often pasted with quotes, and CHANNEL_ID may hold a comma-separated list.
    value = raw.replace('"', "").split(",")[0].strip()
    return int(value) if value.isdigit() else value


def apply_env_overrides(cfg: dict[str, Any], environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    environ = os.environ if environ is None else environ
    for env_key, cfg_key in ENV_OVERRIDES.items():
        raw = environ.get(env_key)
        if not raw:
            continue
        cfg[cfg_key] = raw.strip() if cfg_key == "bot_token" else _parse_env_id(raw)
    return cfg


def get_config(path: str | None = None) -> dict[str, Any]:
    """
    Load, override and validate the bot configuration.

    Order: YAML file (`path`, CONFIG_PATH or ./config.yaml), then values from
    the environment / .env (BOT_TOKEN, OWNER_ID, CHANNEL_ID), then validation.
    Exits with code 1 on any validation error.
    """
    load_dotenv()
    cfg_path = path or get_config_path()
    cfg = apply_env_overrides(read_yaml(cfg_path))

    try:
        validate_config(cfg, cfg_path)
    except ConfigValidationError as e:
        logging.error("%s", e)
        sys.exit(1)
    return cfg
