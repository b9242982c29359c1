"""
models.py - Data Model and Error Kinds for Filter Updates

Records persisted by the version store, the ephemeral per-cycle task type,
and the exception hierarchy used to report per-filter failures.

All instants are epoch milliseconds; ``expires`` is in seconds, as declared
by list authors in the filter header.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, NamedTuple

Clock = Callable[[], int]


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# =============================================================================
# RECORDS
# =============================================================================

@dataclass(frozen=True)
class FilterVersionRecord:
    """
    Last known version metadata of a locally cached filter.

    Attributes:
        version: Version string from the filter header
        expires: Time-to-live declared by the list author, in seconds
        last_update_time: Instant the content last changed (ms)
        last_check_time: Instant the filter was last checked remotely (ms)
        diff_path: Remote location of the patch feed, if the list has one
    """
    version: str
    expires: int
    last_update_time: int
    last_check_time: int
    diff_path: str | None = None

    def checked_at(self, instant: int) -> FilterVersionRecord:
        """Copy of the record with ``last_check_time`` moved to ``instant``."""
        return replace(self, last_check_time=max(instant, self.last_update_time))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": self.version,
            "expires": self.expires,
            "lastUpdateTime": self.last_update_time,
            "lastCheckTime": self.last_check_time,
        }
        if self.diff_path:
            data["diffPath"] = self.diff_path
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FilterVersionRecord:
        return cls(
            version=str(data["version"]),
            expires=int(data["expires"]),
            last_update_time=int(data["lastUpdateTime"]),
            last_check_time=int(data["lastCheckTime"]),
            diff_path=data.get("diffPath") or None,
        )


class FilterUpdateTask(NamedTuple):
    """One filter to update in a cycle. ``force`` bypasses the patch path."""
    filter_id: int
    force: bool


@dataclass(frozen=True)
class FilterMetadata:
    """Metadata of a filter that was successfully updated."""
    filter_id: int
    version: str
    expires: int
    time_updated: int
    diff_path: str | None = None
    title: str | None = None


# =============================================================================
# ERRORS
# =============================================================================

class UpdateError(Exception):
    """Base class for failures isolated to a single filter's update task."""

    def __init__(self, filter_id: int, message: str):
        super().__init__(f"filter {filter_id}: {message}")
        self.filter_id = filter_id
        self.reason = message


class MetadataUnavailable(UpdateError):
    """Subscription metadata needed to locate the filter is missing."""


class PatchApplicationFailure(UpdateError):
    """An incremental patch could not be fetched or applied cleanly."""


class ParseFailure(UpdateError):
    """Fetched content carries no recoverable version header."""


class StorageUnavailable(UpdateError):
    """Reading or writing the version or content store failed."""


class DownloadFailure(UpdateError):
    """Full filter content could not be downloaded."""


# =============================================================================
# RESULTS
# =============================================================================

class UpdateResult(NamedTuple):
    """
    Outcome of one update task.

    Exactly one of the following holds:
        - ``metadata`` is set: the filter content changed and was committed
        - ``error`` is set: the task failed and nothing was committed
        - neither is set: the filter was checked and is already up to date
    """
    filter_id: int
    metadata: FilterMetadata | None = None
    error: UpdateError | None = None

    @property
    def updated(self) -> bool:
        return self.metadata is not None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class UpdateReport:
    """Aggregated outcome of one orchestration cycle."""
    succeeded: list[FilterMetadata] = field(default_factory=list)
    failed: list[UpdateResult] = field(default_factory=list)
    unchanged: list[int] = field(default_factory=list)

    @property
    def updated_ids(self) -> list[int]:
        return [meta.filter_id for meta in self.succeeded]
