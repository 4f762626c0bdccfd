"""Configuration models and helpers for the slice engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping

from .errors import ValidationError

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

SETTING_KEYS = (
    "rounding_enabled",
    "rounding_interval_minutes",
    "away_threshold_seconds",
    "away_detection_enabled",
)


@dataclass(slots=True)
class RoundingConfig:
    enabled: bool = False
    interval_minutes: int = 15


@dataclass(slots=True)
class EngineSettings:
    """User settings read from the settings table at the moment they are needed."""

    rounding_enabled: bool = False
    rounding_interval_minutes: int = 15
    away_threshold_seconds: int = 300
    away_detection_enabled: bool = True

    @property
    def rounding(self) -> RoundingConfig:
        return RoundingConfig(
            enabled=self.rounding_enabled,
            interval_minutes=self.rounding_interval_minutes,
        )

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> "EngineSettings":
        """Build settings from the string key/value pairs of the settings store.

        Missing keys fall back to the defaults; malformed values raise.
        """
        defaults = cls()
        settings = cls(
            rounding_enabled=_parse_bool(
                values.get("rounding_enabled"), defaults.rounding_enabled
            ),
            rounding_interval_minutes=_parse_int(
                "rounding_interval_minutes",
                values.get("rounding_interval_minutes"),
                defaults.rounding_interval_minutes,
            ),
            away_threshold_seconds=_parse_int(
                "away_threshold_seconds",
                values.get("away_threshold_seconds"),
                defaults.away_threshold_seconds,
            ),
            away_detection_enabled=_parse_bool(
                values.get("away_detection_enabled"), defaults.away_detection_enabled
            ),
        )
        if settings.rounding_interval_minutes <= 0:
            raise ValidationError(
                "invalid_setting", "rounding_interval_minutes must be greater than zero"
            )
        if settings.away_threshold_seconds <= 0:
            raise ValidationError(
                "invalid_setting", "away_threshold_seconds must be greater than zero"
            )
        return settings

    def to_mapping(self) -> dict[str, str]:
        return {
            "rounding_enabled": "true" if self.rounding_enabled else "false",
            "rounding_interval_minutes": str(self.rounding_interval_minutes),
            "away_threshold_seconds": str(self.away_threshold_seconds),
            "away_detection_enabled": "true" if self.away_detection_enabled else "false",
        }


@dataclass(slots=True)
class RunnerSettings:
    """Cadence of the background timers."""

    ui_tick: timedelta = timedelta(seconds=1)
    heartbeat_interval: timedelta = timedelta(seconds=60)
    idle_poll_interval: timedelta = timedelta(seconds=5)
    return_idle_seconds: float = 10.0

    @classmethod
    def from_intervals(
        cls,
        idle_poll_seconds: float,
        heartbeat_seconds: float | None = None,
    ) -> "RunnerSettings":
        heartbeat = heartbeat_seconds if heartbeat_seconds is not None else 60.0
        return cls(
            idle_poll_interval=timedelta(seconds=idle_poll_seconds),
            heartbeat_interval=timedelta(seconds=heartbeat),
        )


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return default


def _parse_int(key: str, value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as exc:
        raise ValidationError("invalid_setting", f"{key} must be an integer") from exc
