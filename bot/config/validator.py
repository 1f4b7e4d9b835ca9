"""
Validation for config.yaml.

Every section gets its own checker that appends to a shared list of errors
(bot refuses to start) and warnings (logged, start continues). The
`resilience` section feeds RetryPolicy, so its checks mirror the policy's own
constraints and report them with the config path of the offending key.
"""

from __future__ import annotations

import logging
from typing import Any

from .resilience import policy_errors


logger = logging.getLogger(__name__)

REQUIRED_KEYS = ("bot_token", "providers", "models")
ID_KEYS = ("owner_id", "alert_channel_id")
PERMISSION_SCOPES = ("users", "roles", "channels")
PERMISSION_LISTS = ("allowed_ids", "blocked_ids", "admin_ids")

POLICY_INT_KEYS = ("max_retries", "breaker_limit", "breaker_timeout_ms", "initial_backoff_ms", "max_backoff_ms")
POLICY_KEYS = POLICY_INT_KEYS + ("require_approval", "approval_details")
KNOWN_CALL_SITES = ("chat", "ollama", "attachments")


class ConfigValidationError(Exception):
    """Raised when config validation fails."""


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _type_name(value: Any) -> str:
    return type(value).__name__


# ── Sections ─────────────────────────────────────────────────────────────────

def _validate_ids(cfg: dict[str, Any], errors: list[str], warnings: list[str]) -> None:
    for key in ID_KEYS:
        if key in cfg and not _is_int(cfg[key]):
            errors.append(f"'{key}' must be a Discord ID (integer), got {cfg[key]!r}")
    if "owner_id" not in cfg:
        warnings.append("No 'owner_id' set: approvals and breaker alerts will only be logged")


def _validate_providers(providers: Any, errors: list[str]) -> None:
    if not isinstance(providers, dict):
        errors.append(f"'providers' must be a mapping, got {_type_name(providers)}")
        return
    for name, provider in providers.items():
        if not isinstance(provider, dict):
            errors.append(f"Provider '{name}' config must be a mapping, got {_type_name(provider)}")
        elif "base_url" not in provider:
            errors.append(f"Provider '{name}' missing required 'base_url'")


def _validate_models(models: Any, providers: Any, errors: list[str]) -> None:
    if not isinstance(models, dict):
        errors.append(f"'models' must be a mapping, got {_type_name(models)}")
        return
    if not models:
        errors.append("'models' section is empty (must define at least one model)")
        return

    known_providers = providers if isinstance(providers, dict) else {}
    for name, params in models.items():
        if not isinstance(name, str) or "/" not in name:
            errors.append(f"Model name must look like 'provider/model', got {name!r}")
        elif known_providers and name.split("/", 1)[0] not in known_providers:
            errors.append(f"Model '{name}' refers to unknown provider '{name.split('/', 1)[0]}'")

        if params is None:
            continue
        if not isinstance(params, dict):
            errors.append(f"Model '{name}' config must be a mapping, got {_type_name(params)}")
        elif "think" in params and not isinstance(params["think"], bool):
            errors.append(f"Model '{name}' 'think' must be boolean, got {_type_name(params['think'])}")


def _validate_fallbacks(fallback: Any, errors: list[str]) -> None:
    if not isinstance(fallback, list):
        errors.append(
            f"'fallback_models' must be a list, got {_type_name(fallback)}. "
            "Use: fallback_models:\n  - \"model1\"\n  - \"model2\""
        )
        return
    errors.extend(
        f"'fallback_models[{i}]' must be a string, got {_type_name(name)}"
        for i, name in enumerate(fallback)
        if not isinstance(name, str)
    )


def _validate_permissions(perms: Any, errors: list[str]) -> None:
    if not isinstance(perms, dict):
        errors.append(f"'permissions' must be a mapping, got {_type_name(perms)}")
        return
    for scope in PERMISSION_SCOPES:
        scope_cfg = perms.get(scope)
        if scope_cfg is None:
            continue
        if not isinstance(scope_cfg, dict):
            errors.append(f"'permissions.{scope}' must be a mapping, got {_type_name(scope_cfg)}")
            continue
        for list_key in PERMISSION_LISTS:
            ids = scope_cfg.get(list_key, [])
            if not isinstance(ids, list):
                errors.append(f"'permissions.{scope}.{list_key}' must be a list, got {_type_name(ids)}")


def _validate_policy(where: str, policy: Any, errors: list[str], warnings: list[str]) -> None:
    if not isinstance(policy, dict):
        errors.append(f"'{where}' must be a mapping, got {_type_name(policy)}")
        return

    for key, value in policy.items():
        if key not in POLICY_KEYS:
            warnings.append(
                f"'{where}' has unknown option '{key}'. "
                f"Valid options: {', '.join(POLICY_KEYS)}"
            )
        elif key in POLICY_INT_KEYS and (not _is_int(value) or value < 0):
            errors.append(f"'{where}.{key}' must be a non-negative integer, got {value!r}")

    if _is_int(policy.get("breaker_limit")) and policy["breaker_limit"] < 1:
        errors.append(f"'{where}.breaker_limit' must be at least 1")

    initial, maximum = policy.get("initial_backoff_ms"), policy.get("max_backoff_ms")
    if _is_int(initial) and _is_int(maximum) and initial > maximum:
        errors.append(f"'{where}.initial_backoff_ms' ({initial}) exceeds max_backoff_ms ({maximum})")

    if "require_approval" in policy and not isinstance(policy["require_approval"], bool):
        errors.append(f"'{where}.require_approval' must be boolean, got {_type_name(policy['require_approval'])}")

    details = policy.get("approval_details")
    if policy.get("require_approval") is True and details is None:
        errors.append(f"'{where}' sets require_approval but has no 'approval_details'")
    if details is not None:
        if not isinstance(details, dict):
            errors.append(f"'{where}.approval_details' must be a mapping, got {_type_name(details)}")
        elif "type" not in details:
            errors.append(f"'{where}.approval_details' missing required 'type'")


def _validate_resilience(section: Any, errors: list[str], warnings: list[str]) -> None:
    if not isinstance(section, dict):
        errors.append(f"'resilience' must be a mapping, got {_type_name(section)}")
        return
    found = len(errors)

    if "defaults" in section:
        _validate_policy("resilience.defaults", section["defaults"], errors, warnings)

    call_sites = section.get("call_sites", {})
    if not isinstance(call_sites, dict):
        errors.append(f"'resilience.call_sites' must be a mapping, got {_type_name(call_sites)}")
    else:
        for name, policy in call_sites.items():
            if name not in KNOWN_CALL_SITES:
                warnings.append(
                    f"Unknown call site 'resilience.call_sites.{name}'. "
                    f"Known call sites: {', '.join(KNOWN_CALL_SITES)}"
                )
            _validate_policy(f"resilience.call_sites.{name}", policy, errors, warnings)

    ttl = section.get("approval_ttl_seconds")
    if ttl is not None and (not isinstance(ttl, (int, float)) or isinstance(ttl, bool) or ttl < 0):
        errors.append(f"'resilience.approval_ttl_seconds' must be >= 0, got {ttl!r}")

    sweep = section.get("approval_sweep_seconds")
    if sweep is not None and (not isinstance(sweep, (int, float)) or isinstance(sweep, bool) or sweep <= 0):
        errors.append(f"'resilience.approval_sweep_seconds' must be > 0, got {sweep!r}")

    # Keys can be fine one by one yet clash once layered (e.g. defaults over a built-in call site).
    if len(errors) == found:
        errors.extend(policy_errors({"resilience": section}))


# ── Entry point ──────────────────────────────────────────────────────────────

def validate_config(cfg: dict[str, Any], config_path: str = "config.yaml") -> None:
    """
    Validate a loaded config.yaml.

    All problems are collected first and logged as one numbered block, so a
    broken file is fixed in one pass rather than one restart per mistake.

    Raises:
        ConfigValidationError: if any error was found (warnings never raise)
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not isinstance(cfg, dict):
        errors.append(f"Config root must be a mapping, got {_type_name(cfg)}")
        cfg = {}

    errors.extend(f"Missing required top-level key: '{key}'" for key in REQUIRED_KEYS if key not in cfg)
    _validate_ids(cfg, errors, warnings)

    if "providers" in cfg:
        _validate_providers(cfg["providers"], errors)
    if "models" in cfg:
        _validate_models(cfg["models"], cfg.get("providers"), errors)
    if "fallback_models" in cfg:
        _validate_fallbacks(cfg["fallback_models"], errors)
    if "permissions" in cfg:
        _validate_permissions(cfg["permissions"], errors)
    if "resilience" in cfg:
        _validate_resilience(cfg["resilience"], errors, warnings)

    for warning in warnings:
        logger.warning("Config warning: %s", warning)

    if not errors:
        return

    banner = "=" * 70
    logger.error(banner)
    logger.error("CONFIG VALIDATION FAILED (%s): %d error(s)", config_path, len(errors))
    logger.error(banner)
    for i, error in enumerate(errors, 1):
        logger.error("[%d] %s", i, error)
    logger.error(banner)
    logger.error("Fix the errors above and restart the bot.")
    raise ConfigValidationError(f"{config_path}: {len(errors)} validation error(s)")
