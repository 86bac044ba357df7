"""Sync settings and the result objects the sync manager hands back."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

MIN_POLL_INTERVAL_MS = 500


@dataclass
class SyncSettings:
    """Settings for the push/pull/poll cycle."""

    enabled: bool = True
    base_url: str = ""
    profile: str = "default"
    pull_on_startup: bool = True
    push_debounce_ms: float = 500
    pull_interval_ms: float = 1500
    keep_alive_interval_ms: float = 60 * 60 * 1000
    keep_alive_retry_ms: float = 30_000
    request_timeout_ms: float = 5000
    conflict_retries: int = 3
    conflict_backoff_ms: float = 100

    def __post_init__(self) -> None:
        self.base_url = (self.base_url or "").rstrip("/")
        self.push_debounce_ms = max(0, self.push_debounce_ms)
        self.pull_interval_ms = max(MIN_POLL_INTERVAL_MS, self.pull_interval_ms)
        self.conflict_retries = max(0, int(self.conflict_retries))
        self.conflict_backoff_ms = max(0, self.conflict_backoff_ms)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SyncSettings":
        raw = config.get("sync", {}) if config else {}
        return cls(
            enabled=bool(raw.get("enabled", True)),
            base_url=str(raw.get("base_url", "")),
            profile=str(raw.get("profile", "default")),
            pull_on_startup=bool(raw.get("pull_on_startup", True)),
            push_debounce_ms=raw.get("push_debounce_ms", 500),
            pull_interval_ms=raw.get("pull_interval_ms", 1500),
            keep_alive_interval_ms=raw.get("keep_alive_interval_ms", 60 * 60 * 1000),
            keep_alive_retry_ms=raw.get("keep_alive_retry_ms", 30_000),
            request_timeout_ms=raw.get("request_timeout_ms", 5000),
            conflict_retries=raw.get("conflict_retries", 3),
            conflict_backoff_ms=raw.get("conflict_backoff_ms", 100),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "base_url": self.base_url,
            "profile": self.profile,
            "pull_on_startup": self.pull_on_startup,
            "push_debounce_ms": self.push_debounce_ms,
            "pull_interval_ms": self.pull_interval_ms,
            "keep_alive_interval_ms": self.keep_alive_interval_ms,
            "keep_alive_retry_ms": self.keep_alive_retry_ms,
            "request_timeout_ms": self.request_timeout_ms,
            "conflict_retries": self.conflict_retries,
            "conflict_backoff_ms": self.conflict_backoff_ms,
        }


@dataclass
class PullResult:
    """Outcome of a single pull.

    ``skipped`` covers every case where nothing was applied on purpose: the
    other operation was in flight, the remote was unchanged, or the remote was
    older than what this client already synced (``discarded``).
    """

    applied: bool = False
    not_found: bool = False
    skipped: bool = False
    discarded: bool = False
    error: Optional[str] = None
    status_code: Optional[int] = None
    remote_version: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "applied": self.applied,
            "notFound": self.not_found,
            "skipped": self.skipped,
        }
        if self.discarded:
            result["discarded"] = True
        if self.error is not None:
            result["error"] = self.error
        if self.status_code is not None:
            result["statusCode"] = self.status_code
        if self.remote_version is not None:
            result["remoteVersion"] = self.remote_version
        return result


@dataclass
class SyncStatus:
    """Snapshot reported through the status callback."""

    enabled: bool
    is_pulling: bool = False
    is_pushing: bool = False
    is_polling: bool = False
    last_synced_version: Optional[int] = None
    last_sync_at: Optional[int] = None
    error: Optional[str] = None
    conflicts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "enabled": self.enabled,
            "isPulling": self.is_pulling,
            "isPushing": self.is_pushing,
            "isPolling": self.is_polling,
            "lastSyncedVersion": self.last_synced_version,
            "lastSyncAt": self.last_sync_at,
            "conflicts": self.conflicts,
        }
        if self.error is not None:
            result["error"] = self.error
        return result


__all__ = ["MIN_POLL_INTERVAL_MS", "PullResult", "SyncSettings", "SyncStatus"]
