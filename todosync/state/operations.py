"""Local document edits.

These mutate a document in place and never touch ``meta``: the caller commits
the result through :meth:`todosync.session.SessionController.persist`, which
is where the version moves.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from .document import (
    FOLDER_IDS,
    ISO_DATE_PATTERN,
    SYSTEM_FOLDER_IDS,
    VALID_SCREENS,
    VALID_VIEW_MODES,
    StateDocument,
    folder_ids_of,
    merge_system_folders,
    now_ms,
)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _find_folder(doc: StateDocument, folder_id: str) -> Dict[str, Any]:
    for folder in doc.get("folders", []):
        if folder.get("id") == folder_id:
            return folder
    raise KeyError(f"Unknown folder '{folder_id}'")


def _find_task(doc: StateDocument, task_id: str, collection: str = "tasks") -> Dict[str, Any]:
    for task in doc.get(collection, []):
        if task.get("id") == task_id:
            return task
    raise KeyError(f"Unknown task '{task_id}' in {collection}")


def _next_order(items: List[Dict[str, Any]]) -> float:
    orders = [item.get("order", 0) for item in items]
    return (max(orders) + 1) if orders else 0


def add_folder(
    doc: StateDocument,
    name: str,
    parent_id: Optional[str] = FOLDER_IDS.ALL,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    name = (name or "").strip()
    if not name:
        raise ValueError("Folder name must not be empty")
    if parent_id is not None and parent_id not in folder_ids_of(doc):
        raise KeyError(f"Unknown parent folder '{parent_id}'")

    ts = now_ms() if now is None else now
    siblings = [f for f in doc["folders"] if f.get("parentId") == parent_id]
    folder = {
        "id": _new_id("folder"),
        "name": name,
        "parentId": parent_id,
        "createdAt": ts,
        "updatedAt": ts,
        "order": _next_order([f for f in siblings if f["id"] not in SYSTEM_FOLDER_IDS]),
        "icon": None,
        "viewMode": "list",
        "isLocked": False,
    }
    doc["folders"] = merge_system_folders(doc["folders"] + [folder], ts)
    return _find_folder(doc, folder["id"])


def rename_folder(doc: StateDocument, folder_id: str, name: str, now: Optional[int] = None) -> None:
    name = (name or "").strip()
    if not name:
        raise ValueError("Folder name must not be empty")
    folder = _find_folder(doc, folder_id)
    folder["name"] = name
    folder["updatedAt"] = now_ms() if now is None else now


def delete_folder(doc: StateDocument, folder_id: str, now: Optional[int] = None) -> None:
    """Remove a folder; children move up to its parent, its tasks become unfiled."""
    if folder_id in SYSTEM_FOLDER_IDS:
        raise ValueError(f"System folder '{folder_id}' cannot be deleted")
    folder = _find_folder(doc, folder_id)
    parent_id = folder.get("parentId")
    ts = now_ms() if now is None else now

    remaining = []
    for other in doc["folders"]:
        if other["id"] == folder_id:
            continue
        if other.get("parentId") == folder_id:
            other["parentId"] = parent_id
            other["updatedAt"] = ts
        remaining.append(other)
    doc["folders"] = remaining

    for collection in ("tasks", "archivedTasks"):
        for task in doc.get(collection, []):
            if task.get("folderId") == folder_id:
                task["folderId"] = None
                task["updatedAt"] = ts

    ui = doc.setdefault("ui", {})
    if ui.get("selectedFolderId") == folder_id:
        ui["selectedFolderId"] = parent_id or FOLDER_IDS.ALL
    expanded = ui.get("expandedFolderIds")
    if isinstance(expanded, list) and folder_id in expanded:
        ui["expandedFolderIds"] = [f for f in expanded if f != folder_id]


def add_task(
    doc: StateDocument,
    text: str,
    folder_id: Optional[str] = None,
    planned_for: Optional[str] = None,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    text = (text or "").strip()
    if not text:
        raise ValueError("Task text must not be empty")
    if folder_id in SYSTEM_FOLDER_IDS:
        folder_id = None
    if folder_id is not None and folder_id not in folder_ids_of(doc):
        raise KeyError(f"Unknown folder '{folder_id}'")

    ts = now_ms() if now is None else now
    siblings = [t for t in doc["tasks"] if t.get("folderId") == folder_id]
    task: Dict[str, Any] = {
        "id": _new_id("task"),
        "text": text,
        "folderId": folder_id,
        "completed": False,
        "createdAt": ts,
        "updatedAt": ts,
        "order": _next_order(siblings),
    }
    if planned_for is not None:
        _check_planned_for(planned_for)
        task["plannedFor"] = planned_for
    doc["tasks"].append(task)
    return task


def update_task_text(doc: StateDocument, task_id: str, text: str, now: Optional[int] = None) -> None:
    text = (text or "").strip()
    if not text:
        raise ValueError("Task text must not be empty")
    task = _find_task(doc, task_id)
    task["text"] = text
    task["updatedAt"] = now_ms() if now is None else now


def complete_task(doc: StateDocument, task_id: str, now: Optional[int] = None) -> Dict[str, Any]:
    task = _find_task(doc, task_id)
    ts = now_ms() if now is None else now
    doc["tasks"] = [t for t in doc["tasks"] if t["id"] != task_id]
    task["completed"] = True
    task["completedAt"] = ts
    task["updatedAt"] = ts
    doc["archivedTasks"].append(task)
    return task


def reopen_task(doc: StateDocument, task_id: str, now: Optional[int] = None) -> Dict[str, Any]:
    task = _find_task(doc, task_id, "archivedTasks")
    ts = now_ms() if now is None else now
    doc["archivedTasks"] = [t for t in doc["archivedTasks"] if t["id"] != task_id]
    task["completed"] = False
    task.pop("completedAt", None)
    task["updatedAt"] = ts
    if task.get("folderId") not in folder_ids_of(doc):
        task["folderId"] = None
    task["order"] = _next_order([t for t in doc["tasks"] if t.get("folderId") == task["folderId"]])
    doc["tasks"].append(task)
    return task


def _check_planned_for(planned_for: str) -> None:
    if not isinstance(planned_for, str) or not ISO_DATE_PATTERN.fullmatch(planned_for):
        raise ValueError(f"plannedFor must be YYYY-MM-DD, got {planned_for!r}")


def set_planned_for(
    doc: StateDocument,
    task_id: str,
    planned_for: Optional[str],
    now: Optional[int] = None,
) -> None:
    task = _find_task(doc, task_id)
    if planned_for is None:
        task.pop("plannedFor", None)
    else:
        _check_planned_for(planned_for)
        task["plannedFor"] = planned_for
    task["updatedAt"] = now_ms() if now is None else now


def set_folder_view_mode(doc: StateDocument, folder_id: str, mode: str, now: Optional[int] = None) -> None:
    if mode not in VALID_VIEW_MODES:
        raise ValueError(f"Unknown view mode '{mode}'")
    folder = _find_folder(doc, folder_id)
    folder["viewMode"] = mode
    folder["updatedAt"] = now_ms() if now is None else now


def select_folder(doc: StateDocument, folder_id: str, screen: str = "tasks") -> None:
    if screen not in VALID_SCREENS:
        raise ValueError(f"Unknown screen '{screen}'")
    if folder_id not in folder_ids_of(doc):
        raise KeyError(f"Unknown folder '{folder_id}'")
    ui = doc.setdefault("ui", {})
    ui["selectedFolderId"] = folder_id
    ui["activeScreen"] = screen


__all__ = [
    "add_folder",
    "add_task",
    "complete_task",
    "delete_folder",
    "rename_folder",
    "reopen_task",
    "select_folder",
    "set_folder_view_mode",
    "set_planned_for",
    "update_task_text",
]
