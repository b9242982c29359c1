"""
config.py - Update Settings and Service Defaults

Settings consumed read-only by the update core (filtering switch, update
period, optimized lists), plus the defaults used by the service CLI.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from enum import IntEnum
from typing import Any, Final

logger = logging.getLogger(__name__)


# =============================================================================
# SERVICE DEFAULTS
# =============================================================================

DEFAULT_FILTERS_URL: Final[str] = "https://filters.adtidy.org/extension/chromium"
DEFAULT_DATA_DIR: Final[str] = ".filtersync"
DEFAULT_TIMEOUT: Final[int] = 30
DEFAULT_RETRIES: Final[int] = 3
DEFAULT_CONCURRENCY: Final[int] = 8

#: Scheduler tick, in seconds
DEFAULT_CHECK_PERIOD: Final[int] = 60 * 5

#: Debounce window for engine rebuild signals, in seconds
DEFAULT_ENGINE_DEBOUNCE: Final[float] = 1.0

#: Custom (user-subscribed) filters are allocated ids from here upwards
CUSTOM_FILTERS_START_ID: Final[int] = 1000

#: Built-in filters that need extra user consent before they are enabled
ANNOYANCES_FILTER_IDS: Final[frozenset[int]] = frozenset({14, 18, 19, 20, 21, 22})


class FiltersUpdateTime(IntEnum):
    """
    Well-known values of the ``update_period`` setting, in milliseconds.

    Any positive integer is a valid period; ``DEFAULT`` means "use each
    list's own ``Expires`` header" and ``DISABLED`` turns auto updates off.
    """
    DEFAULT = -1
    DISABLED = 0
    ONE_HOUR = 1000 * 60 * 60
    SIX_HOURS = 1000 * 60 * 60 * 6
    TWELVE_HOURS = 1000 * 60 * 60 * 12
    TWENTY_FOUR_HOURS = 1000 * 60 * 60 * 24
    FORTY_EIGHT_HOURS = 1000 * 60 * 60 * 48


@dataclass
class Settings:
    """User-facing settings read by the update core."""
    filtering_disabled: bool = False
    update_period: int = FiltersUpdateTime.DEFAULT
    use_optimized_filters: bool = False
    check_period: int = DEFAULT_CHECK_PERIOD

    @property
    def auto_update_disabled(self) -> bool:
        return self.update_period == FiltersUpdateTime.DISABLED

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["update_period"] = int(self.update_period)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Settings:
        """
        Build settings from stored data, ignoring unknown keys.

        Values of the wrong type fall back to the field default so a
        hand-edited settings file never stops the update cycle.
        """
        settings = cls()
        if not isinstance(data, dict):
            return settings

        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            default = getattr(settings, f.name)
            try:
                if isinstance(default, bool):
                    if not isinstance(value, bool):
                        raise TypeError(f"expected bool, got {type(value).__name__}")
                    setattr(settings, f.name, value)
                else:
                    setattr(settings, f.name, int(value))
            except (TypeError, ValueError) as e:
                logger.warning("Ignoring invalid setting %s=%r: %s", f.name, value, e)

        return settings
