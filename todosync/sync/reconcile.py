"""Merge a freshly pulled remote document into the live local one.

The collaborative parts of the document (folders, tasks, archived tasks)
come from the remote wholesale.  Navigation state and display preferences are
device-local and survive the pull: the local ``ui`` selection, the local
empty-state cache when the remote carries none, and whatever the UI context
store remembers about view modes and planned-for dates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from ..state.document import (
    VALID_SCREENS,
    StateDocument,
    ensure_system_folders,
    folder_ids_of,
    normalize_state,
)
from ..state.preferences import UIContext

logger = logging.getLogger("todosync.sync.reconcile")


@dataclass
class ReconcileResult:
    document: StateDocument
    view_modes: Dict[str, str] = field(default_factory=dict)
    planned_for: Dict[str, str] = field(default_factory=dict)
    screen_hint: Optional[str] = None
    selection_lost: bool = False


def _preserve_ui(merged: StateDocument, local_ui: Dict[str, Any]) -> bool:
    """Carry local navigation over; returns True when the local folder vanished."""
    ui = merged["ui"]
    known = folder_ids_of(merged)

    selected = local_ui.get("selectedFolderId")
    lost = False
    if isinstance(selected, str) and selected:
        if selected in known:
            ui["selectedFolderId"] = selected
        else:
            lost = True

    screen = local_ui.get("activeScreen")
    if screen in VALID_SCREENS:
        ui["activeScreen"] = screen

    expanded = local_ui.get("expandedFolderIds")
    if isinstance(expanded, list):
        ui["expandedFolderIds"] = [f for f in dict.fromkeys(expanded) if f in known]

    if lost:
        # Let ensure_system_folders pick the fallback and leave the tasks screen.
        ui["selectedFolderId"] = selected
    return lost


def _derive_preferences(
    merged: StateDocument, context: Optional[UIContext]
) -> Tuple[Dict[str, str], Dict[str, str]]:
    view_modes: Dict[str, str] = {}
    for folder in merged["folders"]:
        preferred = context.folder_view_modes.get(folder["id"]) if context else None
        if preferred is not None:
            folder["viewMode"] = preferred
        view_modes[folder["id"]] = folder["viewMode"]

    planned_for: Dict[str, str] = {}
    for task in merged["tasks"]:
        preferred = context.task_planned_for.get(task["id"]) if context else None
        if preferred is not None:
            task["plannedFor"] = preferred
        if task.get("plannedFor"):
            planned_for[task["id"]] = task["plannedFor"]
    return view_modes, planned_for


def _screen_hint(
    target: str,
    current_screen: Optional[str],
    context: Optional[UIContext],
    selection_lost: bool,
) -> Optional[str]:
    if current_screen is None:
        return target
    if current_screen == target:
        return None
    if selection_lost and current_screen == "tasks":
        return "folders"
    if context is not None and context.last_screen is not None:
        return None
    return target


def reconcile(
    local: Optional[StateDocument],
    remote: Any,
    ui_context: Optional[UIContext] = None,
    current_screen: Optional[str] = None,
) -> ReconcileResult:
    """Return the document the client should hold after applying ``remote``.

    ``local`` is not modified.  ``meta`` (version included) is taken from the
    remote; committing the result is the caller's job and must not advance the
    version.
    """
    merged = normalize_state(remote)
    local = local if isinstance(local, dict) else {}
    local_ui = local.get("ui") if isinstance(local.get("ui"), dict) else {}

    selection_lost = _preserve_ui(merged, local_ui)

    local_meta = local.get("meta") if isinstance(local.get("meta"), dict) else {}
    local_stamps = local_meta.get("emptyStateTimestamps")
    if not merged["meta"]["emptyStateTimestamps"] and isinstance(local_stamps, dict):
        merged["meta"]["emptyStateTimestamps"] = dict(local_stamps)

    ensure_system_folders(merged)
    view_modes, planned_for = _derive_preferences(merged, ui_context)

    hint = _screen_hint(merged["ui"]["activeScreen"], current_screen, ui_context, selection_lost)
    if selection_lost:
        logger.info("Selected folder '%s' no longer exists after pull", local_ui.get("selectedFolderId"))

    return ReconcileResult(
        document=merged,
        view_modes=view_modes,
        planned_for=planned_for,
        screen_hint=hint,
        selection_lost=selection_lost,
    )


__all__ = ["ReconcileResult", "reconcile"]
