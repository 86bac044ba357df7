"""Version/meta tracking for the synchronized document.

``meta.version`` is the only conflict-detection key.  Every committed local
edit advances it by exactly one; commits that merely apply a remote snapshot
or write cache-only changes are *suppressed* and leave it alone.
"""

from __future__ import annotations

from typing import Optional

from .document import StateDocument, coerce_version, now_ms


def document_version(doc: Optional[StateDocument]) -> Optional[int]:
    """Return ``meta.version`` as an int, or None when the document has none."""
    if not isinstance(doc, dict):
        return None
    meta = doc.get("meta")
    if not isinstance(meta, dict) or "version" not in meta:
        return None
    return coerce_version(meta.get("version"))


def _ensure_meta(doc: StateDocument, timestamp: int) -> dict:
    meta = doc.get("meta")
    if not isinstance(meta, dict):
        meta = {"version": 0, "updatedAt": timestamp, "emptyStateTimestamps": {}}
        doc["meta"] = meta
    meta.setdefault("emptyStateTimestamps", {})
    return meta


def advance_version(doc: StateDocument, now: Optional[int] = None) -> int:
    timestamp = now_ms() if now is None else now
    meta = _ensure_meta(doc, timestamp)
    meta["version"] = coerce_version(meta.get("version")) + 1
    meta["updatedAt"] = timestamp
    return meta["version"]


def commit(doc: StateDocument, *, update_meta: bool = True, now: Optional[int] = None) -> int:
    """Commit a local change, advancing the version unless suppressed.

    Returns the version the document carries after the commit.
    """
    if update_meta:
        return advance_version(doc, now)
    meta = _ensure_meta(doc, now_ms() if now is None else now)
    meta["version"] = coerce_version(meta.get("version"))
    return meta["version"]


def rebase_version(doc: StateDocument, base_version: int, now: Optional[int] = None) -> int:
    """Make the document a direct descendant of ``base_version``.

    Used after a conflict pull: the merged document is re-committed on top of
    the server's version so the retried push moves the server forward by one.
    """
    timestamp = now_ms() if now is None else now
    meta = _ensure_meta(doc, timestamp)
    meta["version"] = max(coerce_version(meta.get("version")), int(base_version) + 1)
    meta["updatedAt"] = timestamp
    return meta["version"]


__all__ = ["advance_version", "commit", "document_version", "rebase_version"]
