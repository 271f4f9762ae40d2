#!/usr/bin/env python3
# CUI // SP-CTI
"""Policy configuration for the Falcon engine.

All tunable policy constants (promotion thresholds, decay floor, kill-switch
thresholds, injection caps) live in args/falcon_config.yaml and are merged
section by section over DEFAULT_CONFIG. Code never hard-codes them.

Resolution order for the YAML path:
    1. Explicit path argument
    2. FALCON_CONFIG_PATH environment variable
    3. <project_root>/args/falcon_config.yaml

Usage:
    from falcon_engine.compat.config import load_config, get_section

    cfg = load_config()
    floor = get_section("decay")["archive_floor"]
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from falcon_engine.resilience.errors import ConfigurationError

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DEFAULT_CONFIG_PATH = BASE_DIR / "args" / "falcon_config.yaml"

logger = logging.getLogger("falcon.compat.config")


# ---------------------------------------------------------------------------
# Default configuration
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: Dict[str, Dict[str, Any]] = {
    "confidence": {
        "base": {"verbatim": 0.75, "paraphrase": 0.55, "inferred": 0.40},
        "occurrence_boost_per": 0.05,
        "occurrence_boost_max_count": 5,
        "decay_half_life_days": 90,
        "drift_penalty": 0.15,
    },
    "injection": {
        "severity_weights": {"LOW": 0.25, "MEDIUM": 0.5, "HIGH": 0.75, "CRITICAL": 1.0},
        "no_touch_overlap_factor": 0.5,
        "cross_project_penalty": 0.95,
        "max_warnings": 6,
        "max_baselines": 1,
        "max_baselines_low_confidence": 2,
        "low_confidence_profile_threshold": 0.5,
        "low_confidence_fallback_max": 2,
        "low_confidence_fallback_factor": 0.8,
        "max_derived_principles": 1,
        "include_cross_project": False,
    },
    "promotion": {
        "min_projects": 3,
        "min_confidence": 0.6,
        "project_boost_per": 0.05,
        "project_boost_max": 0.15,
    },
    "decay": {
        "archive_floor": 0.2,
    },
    "provisional_alerts": {
        "ttl_days": 14,
        "promotion_threshold": 2,
    },
    "kill_switch": {
        "thresholds": {
            "attribution_precision": {"healthy": 0.6, "critical": 0.4},
            "inferred_ratio": {"healthy": 0.25, "critical": 0.4},
            "observed_improvement": {"healthy": 0.4, "critical": 0.2},
        },
        "cooldown_days": {"inferred_paused": 7, "fully_paused": 14},
        "window_days": 30,
        "min_outcomes": 10,
    },
    "salience": {
        "threshold": 3,
        "window_days": 30,
    },
    "noncompliance": {
        "min_relevance": 0.3,
        "window_lines": 5,
    },
}

_cache: Dict[str, Dict[str, Any]] = {}


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def get_config_path(explicit: Optional[Union[str, Path]] = None) -> Path:
    """Resolve the policy YAML path (explicit > env var > default)."""
    if explicit:
        return Path(explicit)
    env_path = os.environ.get("FALCON_CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _validate(config: Dict[str, Any]) -> None:
    floor = config["decay"]["archive_floor"]
    if not 0.0 <= float(floor) <= 1.0:
        raise ConfigurationError(
            f"decay.archive_floor must be within [0, 1], got {floor}",
            config_key="decay.archive_floor",
        )
    if float(config["confidence"]["decay_half_life_days"]) <= 0:
        raise ConfigurationError(
            "confidence.decay_half_life_days must be positive",
            config_key="confidence.decay_half_life_days",
        )
    if int(config["promotion"]["min_projects"]) < 1:
        raise ConfigurationError(
            "promotion.min_projects must be at least 1",
            config_key="promotion.min_projects",
        )
    if int(config["provisional_alerts"]["promotion_threshold"]) < 1:
        raise ConfigurationError(
            "provisional_alerts.promotion_threshold must be at least 1",
            config_key="provisional_alerts.promotion_threshold",
        )


def _load_cached(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """Parse, merge and validate once per path; later calls reuse the result."""
    path = get_config_path(config_path)
    cache_key = str(path)
    if cache_key in _cache:
        return _cache[cache_key]

    config = copy.deepcopy(DEFAULT_CONFIG)
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Cannot parse {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a mapping at the top level")
        for section, values in data.items():
            if section not in config:
                logger.warning("Ignoring unknown config section '%s' in %s", section, path)
                continue
            if not isinstance(values, dict):
                raise ConfigurationError(
                    f"Section '{section}' in {path} must be a mapping",
                    config_key=section,
                )
            config[section] = _merge(config[section], values)
    else:
        logger.debug("Config file %s not found, using defaults", path)

    _validate(config)
    _cache[cache_key] = config
    return config


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """Load the policy configuration as a private copy the caller may modify.

    Falls back to DEFAULT_CONFIG when the file is missing. A file that exists
    but cannot be parsed raises ConfigurationError.
    """
    return copy.deepcopy(_load_cached(config_path))


def get_section(name: str, config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return one configuration section, loading the default file if needed.

    Without an explicit config the cached section itself is returned and is
    shared by every caller, so treat it as read-only.
    """
    cfg = config if config is not None else _load_cached()
    if name not in cfg:
        raise ConfigurationError(f"Unknown config section '{name}'", config_key=name)
    return cfg[name]


def clear_config_cache() -> None:
    """Drop cached configurations (tests and long-running processes)."""
    _cache.clear()
