"""Canonical shape of the synchronized to-do document.

The document is kept as a plain JSON-compatible ``dict`` with camelCase keys,
because that is exactly what travels over the wire and what lands in local
storage.  ``normalize_state`` turns anything (partial, legacy or garbage) into
a structurally valid document and never raises.
"""

from __future__ import annotations

import json
import math
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

ISO_DATE_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}")
VALID_VIEW_MODES = frozenset({"list", "week"})
VALID_SCREENS = frozenset({"folders", "tasks"})
CURRENT_SCHEMA_VERSION = 2


class FOLDER_IDS:
    ALL = "all"
    INBOX = "inbox"
    PERSONAL = "personal"
    ARCHIVE = "archive"


SYSTEM_FOLDER_IDS = frozenset({FOLDER_IDS.ALL, FOLDER_IDS.ARCHIVE})

REQUIRED_SYSTEM_FOLDERS: List[Dict[str, Any]] = [
    {"id": FOLDER_IDS.ALL, "name": "All", "parentId": None, "order": 0},
    {"id": FOLDER_IDS.ARCHIVE, "name": "Archive", "parentId": FOLDER_IDS.ALL, "order": 1000},
]

DEFAULT_ROOT_FOLDERS: List[Dict[str, Any]] = [
    {"id": FOLDER_IDS.INBOX, "name": "Inbox", "parentId": FOLDER_IDS.ALL, "order": 1},
    {"id": FOLDER_IDS.PERSONAL, "name": "Personal", "parentId": FOLDER_IDS.ALL, "order": 2},
]

StateDocument = Dict[str, Any]


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def clone_state(value: Any) -> Any:
    """Deep copy that shares no structure with the source."""
    return json.loads(json.dumps(value))


def _to_finite_number(value: Any, fallback: Any) -> Any:
    if isinstance(value, bool) or value is None:
        return fallback
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else fallback
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip())
        except ValueError:
            return fallback
        if not math.isfinite(parsed):
            return fallback
        return int(parsed) if parsed.is_integer() else parsed
    return fallback


def _clean_string(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def coerce_version(value: Any, fallback: int = 0) -> int:
    """Coerce to a finite non-negative integer."""
    number = _to_finite_number(value, None)
    if number is None:
        return fallback
    return max(0, int(number))


def coerce_timestamp(value: Any, fallback: int) -> int:
    """Coerce epoch ms, numeric strings or ISO date strings to epoch ms."""
    number = _to_finite_number(value, None)
    if number is not None:
        return int(number)
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return int(parsed.timestamp() * 1000)
        except (ValueError, OverflowError):
            return fallback
    return fallback


def normalize_folder(
    folder: Any,
    index: int,
    timestamp: int,
    fallback_parent_id: Optional[str] = FOLDER_IDS.ALL,
) -> Optional[Dict[str, Any]]:
    if not isinstance(folder, dict):
        return None

    folder_id = _clean_string(folder.get("id")) or f"folder-{index}"
    name = _clean_string(folder.get("name")) or f"Folder {index + 1}"
    parent_id = _clean_string(folder.get("parentId"))
    created_at = _to_finite_number(folder.get("createdAt"), timestamp)
    updated_at = _to_finite_number(folder.get("updatedAt"), created_at)
    order = _to_finite_number(folder.get("order"), index)
    icon = _clean_string(folder.get("icon"))
    view_mode = folder.get("viewMode") if folder.get("viewMode") in VALID_VIEW_MODES else "list"
    password_hash = _clean_string(folder.get("passwordHash"))
    password_salt = _clean_string(folder.get("passwordSalt"))
    password_hint = _clean_string(folder.get("passwordHint"))

    normalized: Dict[str, Any] = {
        "id": folder_id,
        "name": name,
        "parentId": fallback_parent_id if parent_id == folder_id else parent_id,
        "createdAt": created_at,
        "updatedAt": updated_at,
        "order": order,
        "icon": icon,
        "viewMode": view_mode,
    }
    if password_hash:
        normalized["passwordHash"] = password_hash
    if password_salt:
        normalized["passwordSalt"] = password_salt
    if password_hint:
        normalized["passwordHint"] = password_hint
    normalized["isLocked"] = bool(password_hash and password_salt)
    return normalized


def normalize_task(
    task: Any,
    index: int,
    timestamp: int,
    folder_ids: Set[str],
    completed: bool = False,
) -> Optional[Dict[str, Any]]:
    if not isinstance(task, dict):
        return None

    text = task.get("text") if isinstance(task.get("text"), str) else ""
    if not text.strip() and isinstance(task.get("title"), str):
        text = task["title"]
    text = text.strip()
    if not text:
        return None

    task_id = _clean_string(task.get("id")) or f"task-{index}"
    folder_id = task.get("folderId") if isinstance(task.get("folderId"), str) else None
    if folder_id not in folder_ids:
        folder_id = None

    created_at = _to_finite_number(task.get("createdAt"), timestamp)
    raw_updated = task.get("updatedAt")
    if raw_updated is None:
        raw_updated = task.get("modifiedAt")
    updated_at = _to_finite_number(raw_updated, created_at)
    order = _to_finite_number(task.get("order"), index)
    planned_for = task.get("plannedFor")
    is_completed = completed or bool(task.get("completed"))

    normalized: Dict[str, Any] = {
        "id": task_id,
        "text": text,
        "folderId": folder_id,
        "completed": is_completed,
        "createdAt": created_at,
        "updatedAt": updated_at,
        "order": order,
    }
    if is_completed:
        normalized["completedAt"] = _to_finite_number(task.get("completedAt"), updated_at)
    if isinstance(planned_for, str) and ISO_DATE_PATTERN.fullmatch(planned_for):
        normalized["plannedFor"] = planned_for
    return normalized


def merge_system_folders(folders: Iterable[Any], timestamp: int) -> List[Dict[str, Any]]:
    """Normalize folders, collapse duplicate ids and restore system folders."""
    by_id: Dict[str, Dict[str, Any]] = {}
    for index, folder in enumerate(folders):
        normalized = normalize_folder(folder, index, timestamp)
        if normalized:
            by_id[normalized["id"]] = normalized

    for index, system_folder in enumerate(REQUIRED_SYSTEM_FOLDERS):
        folder_id = system_folder["id"]
        existing = by_id.get(folder_id)
        if existing:
            merged = dict(existing)
            merged["parentId"] = system_folder["parentId"]
            by_id[folder_id] = merged
        else:
            by_id[folder_id] = normalize_folder(
                system_folder, index, timestamp, FOLDER_IDS.ALL
            )

    known_ids = set(by_id)
    for folder in by_id.values():
        if folder["id"] == FOLDER_IDS.ALL:
            continue
        if folder["parentId"] is not None and folder["parentId"] not in known_ids:
            folder["parentId"] = FOLDER_IDS.ALL

    return sorted(by_id.values(), key=lambda f: (f["order"], f["name"].casefold(), f["id"]))


def create_default_state(timestamp: Optional[int] = None) -> StateDocument:
    """Fresh document: version 0, seeded folders, no tasks."""
    ts = now_ms() if timestamp is None else timestamp
    folders = merge_system_folders([dict(f) for f in DEFAULT_ROOT_FOLDERS], ts)
    return {
        "meta": {
            "version": 0,
            "updatedAt": ts,
            "emptyStateTimestamps": {},
            "schemaVersion": CURRENT_SCHEMA_VERSION,
        },
        "folders": folders,
        "tasks": [],
        "archivedTasks": [],
        "ui": {
            "selectedFolderId": FOLDER_IDS.INBOX,
            "activeScreen": "folders",
            "expandedFolderIds": [FOLDER_IDS.ALL],
        },
    }


def _normalize_ui(raw_ui: Any, base_ui: Dict[str, Any], folder_ids: Set[str]) -> Dict[str, Any]:
    ui = dict(base_ui)
    if isinstance(raw_ui, dict):
        ui.update(raw_ui)

    if ui.get("activeScreen") not in VALID_SCREENS:
        ui["activeScreen"] = base_ui["activeScreen"]

    selected = ui.get("selectedFolderId")
    if not isinstance(selected, str) or selected not in folder_ids:
        ui["selectedFolderId"] = (
            FOLDER_IDS.INBOX if FOLDER_IDS.INBOX in folder_ids else FOLDER_IDS.ALL
        )

    expanded = ui.get("expandedFolderIds")
    if not isinstance(expanded, list):
        ui["expandedFolderIds"] = list(base_ui["expandedFolderIds"])
    else:
        seen: List[str] = []
        for folder_id in expanded:
            if isinstance(folder_id, str) and folder_id in folder_ids and folder_id not in seen:
                seen.append(folder_id)
        ui["expandedFolderIds"] = seen
    return ui


def _normalize_meta(raw_meta: Any, base_meta: Dict[str, Any], timestamp: int) -> Dict[str, Any]:
    meta = dict(base_meta)
    if isinstance(raw_meta, dict):
        meta.update(raw_meta)

    meta["version"] = coerce_version(meta.get("version"), base_meta["version"])
    meta["updatedAt"] = coerce_timestamp(meta.get("updatedAt"), timestamp)
    meta["schemaVersion"] = CURRENT_SCHEMA_VERSION

    stamps = meta.get("emptyStateTimestamps")
    if not isinstance(stamps, dict):
        meta["emptyStateTimestamps"] = {}
    else:
        meta["emptyStateTimestamps"] = {
            str(key): value
            for key, value in stamps.items()
            if _to_finite_number(value, None) is not None and not isinstance(value, str)
        }
    return meta


def normalize_state(raw: Any, timestamp: Optional[int] = None) -> StateDocument:
    """Return a structurally valid document for any JSON-shaped input."""
    ts = now_ms() if timestamp is None else timestamp
    if not isinstance(raw, dict):
        return create_default_state(ts)

    base = create_default_state(ts)
    raw_folders = raw.get("folders") if isinstance(raw.get("folders"), list) else []
    folders = merge_system_folders(raw_folders, ts)
    folder_ids = {folder["id"] for folder in folders}

    seen_ids: Set[str] = set()
    tasks: List[Dict[str, Any]] = []
    archived: List[Dict[str, Any]] = []

    def _push(collection: List[Dict[str, Any]], task: Optional[Dict[str, Any]]) -> None:
        if task is None or task["id"] in seen_ids:
            return
        seen_ids.add(task["id"])
        collection.append(task)

    raw_tasks = raw.get("tasks") if isinstance(raw.get("tasks"), list) else []
    for index, task in enumerate(raw_tasks):
        normalized = normalize_task(task, index, ts, folder_ids)
        if normalized is None:
            continue
        _push(archived if normalized["completed"] else tasks, normalized)

    raw_archived = raw.get("archivedTasks") if isinstance(raw.get("archivedTasks"), list) else []
    for index, task in enumerate(raw_archived):
        normalized = normalize_task(task, len(raw_tasks) + index, ts, folder_ids, completed=True)
        _push(archived, normalized)

    return {
        "meta": _normalize_meta(raw.get("meta"), base["meta"], ts),
        "folders": folders,
        "tasks": tasks,
        "archivedTasks": archived,
        "ui": _normalize_ui(raw.get("ui"), base["ui"], folder_ids),
    }


def folder_ids_of(doc: StateDocument) -> Set[str]:
    return {folder["id"] for folder in doc.get("folders", []) if isinstance(folder, dict)}


def ensure_system_folders(doc: StateDocument, timestamp: Optional[int] = None) -> StateDocument:
    """Repair folders in place and drop references to folders that vanished.

    If the selected folder disappeared while the tasks screen was showing,
    navigation falls back to the folder list.
    """
    ts = now_ms() if timestamp is None else timestamp
    doc["folders"] = merge_system_folders(doc.get("folders") or [], ts)
    known = folder_ids_of(doc)

    for collection in ("tasks", "archivedTasks"):
        for task in doc.get(collection) or []:
            if task.get("folderId") is not None and task.get("folderId") not in known:
                task["folderId"] = None

    ui = doc.setdefault("ui", {})
    if ui.get("selectedFolderId") not in known:
        ui["selectedFolderId"] = FOLDER_IDS.ALL
        if ui.get("activeScreen") == "tasks":
            ui["activeScreen"] = "folders"
    return doc


__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "FOLDER_IDS",
    "ISO_DATE_PATTERN",
    "StateDocument",
    "SYSTEM_FOLDER_IDS",
    "VALID_SCREENS",
    "VALID_VIEW_MODES",
    "clone_state",
    "coerce_timestamp",
    "coerce_version",
    "create_default_state",
    "ensure_system_folders",
    "folder_ids_of",
    "merge_system_folders",
    "normalize_folder",
    "normalize_state",
    "normalize_task",
    "now_ms",
]
