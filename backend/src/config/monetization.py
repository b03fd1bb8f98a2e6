"""
Monetization configuration loader.

Loads role naming, attribution window and sweep pacing from
config/monetization.yml, with environment overrides for deploy-time tuning.

Consumers:
  - RoleReconciler: paid/free role names and colours, sweep delay
  - AttributionMatcher: pending click window

Usage:
    from src.config.monetization import get_monetization_config

    config = get_monetization_config()
    config.paid_role.name          # "🟢 Paid Member"
    config.sweep_delay_seconds     # 0.1
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

# Fallbacks used when the YAML is missing or a key is absent
_FALLBACK_PAID_ROLE = {"name": "🟢 Paid Member", "color": 0x2ECC71}
_FALLBACK_FREE_ROLE = {"name": "🔴 Free Member", "color": 0xE74C3C}
_FALLBACK_PENDING_CLICK_WINDOW = 10
_FALLBACK_SWEEP_DELAY_SECONDS = 0.1


@dataclass(frozen=True)
class RoleSpec:
    """Name and colour of a standardized role."""
    name: str
    color: int


@dataclass(frozen=True)
class MonetizationConfig:
    """Resolved monetization settings."""
    paid_role: RoleSpec
    free_role: RoleSpec
    pending_click_window: int
    sweep_delay_seconds: float


def _parse_color(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().lstrip("#")
    if text.lower().startswith("0x"):
        text = text[2:]
    try:
        return int(text, 16)
    except ValueError:
        logger.warning("Invalid role colour %r, using default", value)
        return default


def _role_spec(raw: Dict[str, Any], fallback: Dict[str, Any]) -> RoleSpec:
    return RoleSpec(
        name=str(raw.get("name") or fallback["name"]),
        color=_parse_color(raw.get("color"), fallback["color"]),
    )


class MonetizationConfigLoader:
    """
    Thread-safe singleton loader for config/monetization.yml.

    Environment overrides (applied after the YAML):
      - MONETIZATION_CONFIG_PATH: explicit path to the YAML file
      - PENDING_CLICK_WINDOW: pending clicks considered per join
      - ROLE_SWEEP_DELAY_SECONDS: pause between members in a full sweep
    """

    _instance: Optional["MonetizationConfigLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv("MONETIZATION_CONFIG_PATH")
        self._raw: Dict[str, Any] = {}
        self._config: Optional[MonetizationConfig] = None
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(__file__).parent.parent.parent.parent / "config" / "monetization.yml",
            Path(os.getcwd()) / "config" / "monetization.yml",
            Path(os.getcwd()) / ".." / "config" / "monetization.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"monetization.yml not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            try:
                path = self._resolve_path()
                logger.info("Loading monetization config from %s", path)

                with open(path, "r", encoding="utf-8") as f:
                    self._raw = yaml.safe_load(f) or {}
            except FileNotFoundError:
                logger.warning("monetization.yml not found, using fallback defaults")
                self._raw = {}

            self._config = self._build()

    def _build(self) -> MonetizationConfig:
        roles = self._raw.get("roles", {})
        attribution = self._raw.get("attribution", {})
        reconciliation = self._raw.get("reconciliation", {})

        window = int(attribution.get("pending_click_window", _FALLBACK_PENDING_CLICK_WINDOW))
        delay = float(reconciliation.get("sweep_delay_seconds", _FALLBACK_SWEEP_DELAY_SECONDS))

        env_window = os.getenv("PENDING_CLICK_WINDOW")
        if env_window:
            window = int(env_window)
        env_delay = os.getenv("ROLE_SWEEP_DELAY_SECONDS")
        if env_delay:
            delay = float(env_delay)

        if window < 1:
            raise ValueError("pending_click_window must be at least 1")
        if delay < 0:
            raise ValueError("sweep_delay_seconds cannot be negative")

        paid_role = _role_spec(roles.get("paid", {}), _FALLBACK_PAID_ROLE)
        free_role = _role_spec(roles.get("free", {}), _FALLBACK_FREE_ROLE)
        if paid_role.name == free_role.name:
            raise ValueError("paid and free roles must have different names")

        return MonetizationConfig(
            paid_role=paid_role,
            free_role=free_role,
            pending_click_window=window,
            sweep_delay_seconds=delay,
        )

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    @property
    def config(self) -> MonetizationConfig:
        return self._config


def get_monetization_config(config_path: Optional[str] = None) -> MonetizationConfig:
    """Return the resolved config from the singleton loader."""
    return MonetizationConfigLoader(config_path).config


def reset_monetization_config_loader() -> None:
    """Reset singleton (for tests only)."""
    MonetizationConfigLoader._instance = None
