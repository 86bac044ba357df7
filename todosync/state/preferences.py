"""Profile-keyed UI context kept outside the synchronized document.

Stores per-device navigation and display preferences: the last screen and
folder, per-folder view modes, per-task planned-for overrides and a short
navigation breadcrumb trail.  Reconciliation consults it so that a remote
pull cannot silently discard what this device chose.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .document import ISO_DATE_PATTERN, VALID_SCREENS, VALID_VIEW_MODES
from .storage import KeyValueStorage, StorageError

logger = logging.getLogger("todosync.state.preferences")

MAX_BREADCRUMBS = 20


@dataclass
class UIContext:
    """Device-local preferences for one profile."""

    last_screen: Optional[str] = None
    last_folder_id: Optional[str] = None
    folder_view_modes: Dict[str, str] = field(default_factory=dict)
    task_planned_for: Dict[str, str] = field(default_factory=dict)
    breadcrumbs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastScreen": self.last_screen,
            "lastFolderId": self.last_folder_id,
            "folderViewModes": dict(self.folder_view_modes),
            "taskPlannedFor": dict(self.task_planned_for),
            "breadcrumbs": list(self.breadcrumbs),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "UIContext":
        if not isinstance(data, dict):
            return cls()
        last_screen = data.get("lastScreen")
        last_folder = data.get("lastFolderId")
        modes = data.get("folderViewModes") if isinstance(data.get("folderViewModes"), dict) else {}
        planned = data.get("taskPlannedFor") if isinstance(data.get("taskPlannedFor"), dict) else {}
        crumbs = data.get("breadcrumbs") if isinstance(data.get("breadcrumbs"), list) else []
        return cls(
            last_screen=last_screen if last_screen in VALID_SCREENS else None,
            last_folder_id=last_folder if isinstance(last_folder, str) else None,
            folder_view_modes={
                str(k): v for k, v in modes.items() if v in VALID_VIEW_MODES
            },
            task_planned_for={
                str(k): v
                for k, v in planned.items()
                if isinstance(v, str) and ISO_DATE_PATTERN.fullmatch(v)
            },
            breadcrumbs=[c for c in crumbs if isinstance(c, str)][-MAX_BREADCRUMBS:],
        )


class UIContextStore:
    """Load and persist a :class:`UIContext` under ``uiContext:<profile>``."""

    def __init__(self, storage: KeyValueStorage, profile: str = "default"):
        self.storage = storage
        self.profile = profile or "default"
        self._context: Optional[UIContext] = None

    @property
    def key(self) -> str:
        return f"uiContext:{self.profile}"

    @property
    def context(self) -> UIContext:
        if self._context is None:
            self._context = self.load()
        return self._context

    def load(self) -> UIContext:
        try:
            raw = self.storage.get(self.key)
        except StorageError as e:
            logger.warning("Unable to read UI context for '%s': %s", self.profile, e)
            raw = None
        self._context = UIContext.from_dict(raw)
        return self._context

    def save(self) -> None:
        try:
            self.storage.set(self.key, self.context.to_dict())
        except StorageError as e:
            logger.warning("Unable to persist UI context for '%s': %s", self.profile, e)

    def remember_screen(self, screen: str) -> None:
        if screen not in VALID_SCREENS:
            return
        self.context.last_screen = screen
        self.save()

    def remember_folder(self, folder_id: str) -> None:
        ctx = self.context
        ctx.last_folder_id = folder_id
        if not ctx.breadcrumbs or ctx.breadcrumbs[-1] != folder_id:
            ctx.breadcrumbs.append(folder_id)
            del ctx.breadcrumbs[:-MAX_BREADCRUMBS]
        self.save()

    def set_folder_view_mode(self, folder_id: str, mode: str) -> None:
        if mode not in VALID_VIEW_MODES:
            raise ValueError(f"Unknown view mode '{mode}'")
        self.context.folder_view_modes[folder_id] = mode
        self.save()

    def set_task_planned_for(self, task_id: str, planned_for: Optional[str]) -> None:
        if planned_for is None:
            self.context.task_planned_for.pop(task_id, None)
        elif ISO_DATE_PATTERN.fullmatch(planned_for):
            self.context.task_planned_for[task_id] = planned_for
        else:
            raise ValueError(f"plannedFor must be YYYY-MM-DD, got '{planned_for}'")
        self.save()

    def prune(self, folder_ids: Iterable[str], task_ids: Iterable[str]) -> bool:
        """Drop entries for folders and tasks that no longer exist.

        Returns True when anything was removed (and persisted).
        """
        ctx = self.context
        folders = set(folder_ids)
        tasks = set(task_ids)
        changed = False

        for folder_id in [f for f in ctx.folder_view_modes if f not in folders]:
            del ctx.folder_view_modes[folder_id]
            changed = True
        for task_id in [t for t in ctx.task_planned_for if t not in tasks]:
            del ctx.task_planned_for[task_id]
            changed = True
        if ctx.last_folder_id is not None and ctx.last_folder_id not in folders:
            ctx.last_folder_id = None
            changed = True
        crumbs = [c for c in ctx.breadcrumbs if c in folders]
        if crumbs != ctx.breadcrumbs:
            ctx.breadcrumbs = crumbs
            changed = True

        if changed:
            self.save()
        return changed


__all__ = ["MAX_BREADCRUMBS", "UIContext", "UIContextStore"]
