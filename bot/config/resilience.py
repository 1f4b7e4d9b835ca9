from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Mapping

from bot.resilience import RetryPolicy


DEFAULT_APPROVAL_TTL_SECONDS = 900
DEFAULT_APPROVAL_SWEEP_SECONDS = 30

# Built-in call sites and their tweaks over `resilience.defaults`.
BUILTIN_CALL_SITES: Dict[str, dict[str, Any]] = {
    "chat": {},
    "ollama": {"max_retries": 2},
    "attachments": {"max_retries": 1, "max_backoff_ms": 2000},
}

# on_breaker_open is wired in code, never from YAML.
POLICY_OPTIONS = frozenset(f.name for f in fields(RetryPolicy)) - {"on_breaker_open"}


class PolicyConfigError(ValueError):
    """A policy layer that cannot be built, tagged with its config path."""

    def __init__(self, where: str, error: Exception):
        self.where = where
        builtin = BUILTIN_CALL_SITES.get(where.rsplit(".", 1)[-1]) if where.startswith("resilience.call_sites.") else None
        note = f" (after built-in settings {builtin})" if builtin else ""
        super().__init__(f"'{where}': {error}{note}")


@dataclass
class ResilienceSettings:
    default_policy: RetryPolicy = field(default_factory=RetryPolicy)
    policies: Dict[str, RetryPolicy] = field(default_factory=dict)
    approval_ttl_seconds: float = DEFAULT_APPROVAL_TTL_SECONDS
    approval_sweep_seconds: float = DEFAULT_APPROVAL_SWEEP_SECONDS


def _known_options(data: Mapping[str, Any]) -> dict[str, Any]:
    # Unknown keys were already reported as warnings by the validator.
    return {k: v for k, v in data.items() if k in POLICY_OPTIONS}


def _build(where: str, data: Mapping[str, Any], base: RetryPolicy | None = None) -> RetryPolicy:
    try:
        return RetryPolicy.from_mapping(_known_options(data), base=base)
    except (TypeError, ValueError) as e:
        raise PolicyConfigError(where, e) from e


def _call_site_layers(section: Mapping[str, Any]) -> Dict[str, dict[str, Any]]:
    overrides = section.get("call_sites") or {}
    return {
        name: {**BUILTIN_CALL_SITES.get(name, {}), **(overrides.get(name) or {})}
        for name in {*BUILTIN_CALL_SITES, *overrides}
    }


def load_resilience_settings(config: dict[str, Any]) -> ResilienceSettings:
    """
    Build retry policies from config['resilience'].

    Call-site entries are layered over `defaults`, which are layered over the
    RetryPolicy defaults. Raises PolicyConfigError for a layer whose merged
    values are inconsistent.
    """
    section = config.get("resilience") or {}
    default_policy = _build("resilience.defaults", section.get("defaults") or {})
    policies = {
        name: _build(f"resilience.call_sites.{name}", merged, base=default_policy)
        for name, merged in _call_site_layers(section).items()
    }

    return ResilienceSettings(
        default_policy=default_policy,
        policies=policies,
        approval_ttl_seconds=section.get("approval_ttl_seconds", DEFAULT_APPROVAL_TTL_SECONDS),
        approval_sweep_seconds=section.get("approval_sweep_seconds", DEFAULT_APPROVAL_SWEEP_SECONDS),
    )


def policy_errors(config: dict[str, Any]) -> List[str]:
    """Every layer that would fail to build, one message per config path."""
    section = config.get("resilience") or {}
    try:
        default_policy = _build("resilience.defaults", section.get("defaults") or {})
    except PolicyConfigError as e:
        return [str(e)]

    errors = []
    for name, merged in sorted(_call_site_layers(section).items()):
        try:
            _build(f"resilience.call_sites.{name}", merged, base=default_policy)
        except PolicyConfigError as e:
            errors.append(str(e))
    return errors
