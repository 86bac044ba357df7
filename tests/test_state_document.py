"""Tests for document normalization and system-folder repair."""

from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st

from todosync.state.document import (
    CURRENT_SCHEMA_VERSION,
    FOLDER_IDS,
    clone_state,
    coerce_timestamp,
    coerce_version,
    create_default_state,
    ensure_system_folders,
    folder_ids_of,
    normalize_state,
)

TS = 1_700_000_000_000


def test_default_state_has_system_and_root_folders():
    doc = create_default_state(TS)

    ids = [folder["id"] for folder in doc["folders"]]
    assert ids == ["all", "inbox", "personal", "archive"]
    assert doc["meta"]["version"] == 0
    assert doc["meta"]["schemaVersion"] == CURRENT_SCHEMA_VERSION
    assert doc["tasks"] == [] and doc["archivedTasks"] == []
    assert doc["ui"]["selectedFolderId"] == FOLDER_IDS.INBOX


def test_normalize_non_dict_returns_default():
    assert normalize_state("garbage", TS) == create_default_state(TS)
    assert normalize_state(None, TS) == create_default_state(TS)


def test_normalize_restores_missing_system_folders():
    raw = {"folders": [{"id": "work", "name": "Work", "parentId": "all"}]}

    doc = normalize_state(raw, TS)

    ids = folder_ids_of(doc)
    assert {"all", "archive", "work"} <= ids
    all_folder = next(f for f in doc["folders"] if f["id"] == "all")
    archive = next(f for f in doc["folders"] if f["id"] == "archive")
    assert all_folder["parentId"] is None
    assert archive["parentId"] == "all"


def test_normalize_repairs_dangling_and_self_parents():
    raw = {
        "folders": [
            {"id": "a", "name": "A", "parentId": "ghost"},
            {"id": "b", "name": "B", "parentId": "b"},
        ]
    }

    doc = normalize_state(raw, TS)

    parents = {f["id"]: f["parentId"] for f in doc["folders"]}
    assert parents["a"] == "all"
    assert parents["b"] == "all"


def test_normalize_collapses_duplicate_folder_ids_last_wins():
    raw = {"folders": [{"id": "x", "name": "First"}, {"id": "x", "name": "Second"}]}

    doc = normalize_state(raw, TS)

    matches = [f for f in doc["folders"] if f["id"] == "x"]
    assert len(matches) == 1
    assert matches[0]["name"] == "Second"


def test_normalize_tasks_moves_completed_and_drops_empty():
    raw = {
        "folders": [{"id": "work", "name": "Work"}],
        "tasks": [
            {"id": "t1", "text": "  write report ", "folderId": "work"},
            {"id": "t2", "text": "done already", "completed": True, "updatedAt": 5},
            {"id": "t3", "text": "   "},
            {"id": "t4", "title": "legacy title", "folderId": "missing"},
            "not a task",
        ],
        "archivedTasks": [{"id": "t1", "text": "duplicate id"}],
    }

    doc = normalize_state(raw, TS)

    assert [t["id"] for t in doc["tasks"]] == ["t1", "t4"]
    assert doc["tasks"][0]["text"] == "write report"
    assert doc["tasks"][1]["text"] == "legacy title"
    assert doc["tasks"][1]["folderId"] is None
    assert [t["id"] for t in doc["archivedTasks"]] == ["t2"]
    assert doc["archivedTasks"][0]["completedAt"] == 5


def test_normalize_task_keeps_only_iso_planned_for():
    raw = {
        "tasks": [
            {"id": "a", "text": "one", "plannedFor": "2024-03-01"},
            {"id": "b", "text": "two", "plannedFor": "next tuesday"},
            {"id": "c", "text": "three", "plannedFor": "2024-03-01\n"},
        ]
    }

    doc = normalize_state(raw, TS)

    assert doc["tasks"][0]["plannedFor"] == "2024-03-01"
    assert "plannedFor" not in doc["tasks"][1]
    assert "plannedFor" not in doc["tasks"][2]


def test_normalize_meta_coerces_version_and_stamps():
    raw = {
        "meta": {
            "version": "7",
            "updatedAt": "2024-01-01T00:00:00Z",
            "emptyStateTimestamps": {"inbox": 10, "bad": "x", "flag": True},
        }
    }

    doc = normalize_state(raw, TS)

    assert doc["meta"]["version"] == 7
    assert doc["meta"]["updatedAt"] == 1_704_067_200_000
    assert doc["meta"]["emptyStateTimestamps"] == {"inbox": 10}


def test_normalize_ui_falls_back_for_unknown_values():
    raw = {
        "ui": {
            "selectedFolderId": "nope",
            "activeScreen": "settings",
            "expandedFolderIds": ["all", "all", "ghost", 3],
        }
    }

    doc = normalize_state(raw, TS)

    assert doc["ui"]["selectedFolderId"] == "all"
    assert doc["ui"]["activeScreen"] == "folders"
    assert doc["ui"]["expandedFolderIds"] == ["all"]


def test_normalize_does_not_mutate_input():
    raw = {"folders": [{"id": "w", "name": " Work "}], "tasks": [{"text": "x"}]}
    snapshot = clone_state(raw)

    normalize_state(raw, TS)

    assert raw == snapshot


def test_coerce_helpers():
    assert coerce_version(None) == 0
    assert coerce_version(-4) == 0
    assert coerce_version("3.9") == 3
    assert coerce_version(True, 2) == 2
    assert coerce_version(float("nan"), 1) == 1
    assert coerce_timestamp("not a date", 42) == 42
    assert coerce_timestamp(12.0, 0) == 12


def test_ensure_system_folders_unfiles_orphans_and_resets_selection():
    doc = create_default_state(TS)
    doc["tasks"].append({"id": "t", "text": "x", "folderId": "gone"})
    doc["folders"] = [f for f in doc["folders"] if f["id"] != "inbox"]
    doc["ui"]["activeScreen"] = "tasks"

    ensure_system_folders(doc, TS)

    assert doc["tasks"][0]["folderId"] is None
    assert doc["ui"]["selectedFolderId"] == "all"
    assert doc["ui"]["activeScreen"] == "folders"


def test_ensure_system_folders_restores_deleted_all_folder():
    doc = create_default_state(TS)
    doc["folders"] = [f for f in doc["folders"] if f["id"] != "all"]

    ensure_system_folders(doc, TS)

    assert "all" in folder_ids_of(doc)


_scalars = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(min_value=-(10**6), max_value=10**15),
    st.floats(allow_nan=False, allow_infinity=False, width=32),
    st.text(max_size=12),
)
_ids = st.one_of(st.sampled_from(["all", "archive", "inbox", "personal", "a", "b"]), _scalars)

_folders = st.lists(
    st.fixed_dictionaries(
        {},
        optional={
            "id": _ids,
            "name": _scalars,
            "parentId": _ids,
            "order": _scalars,
            "createdAt": _scalars,
            "viewMode": st.sampled_from(["list", "week", "grid", None]),
            "icon": _scalars,
        },
    ),
    max_size=6,
)
_tasks = st.lists(
    st.fixed_dictionaries(
        {},
        optional={
            "id": st.one_of(st.sampled_from(["t1", "t2", "t3"]), _scalars),
            "text": _scalars,
            "title": _scalars,
            "folderId": _ids,
            "completed": _scalars,
            "order": _scalars,
            "updatedAt": _scalars,
            "plannedFor": st.one_of(st.just("2024-05-06"), _scalars),
        },
    ),
    max_size=6,
)
_documents = st.fixed_dictionaries(
    {},
    optional={
        "meta": st.fixed_dictionaries(
            {},
            optional={
                "version": _scalars,
                "updatedAt": st.integers(min_value=0, max_value=10**13),
                "emptyStateTimestamps": st.dictionaries(st.text(max_size=4), _scalars, max_size=3),
            },
        ),
        "folders": _folders,
        "tasks": _tasks,
        "archivedTasks": _tasks,
        "ui": st.fixed_dictionaries(
            {},
            optional={
                "selectedFolderId": _ids,
                "activeScreen": st.sampled_from(["folders", "tasks", "other"]),
                "expandedFolderIds": st.lists(_ids, max_size=4),
            },
        ),
    },
)


@settings(max_examples=150, deadline=None)
@given(_documents)
def test_normalize_is_idempotent(raw):
    once = normalize_state(raw, TS)
    twice = normalize_state(once, TS)

    assert twice == once
    assert {"all", "archive"} <= folder_ids_of(once)
