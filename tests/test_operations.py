"""Tests for local document edits."""

from __future__ import annotations

import pytest

from todosync.state.document import create_default_state, folder_ids_of
from todosync.state.operations import (
    add_folder,
    add_task,
    complete_task,
    delete_folder,
    rename_folder,
    reopen_task,
    select_folder,
    set_folder_view_mode,
    set_planned_for,
    update_task_text,
)

TS = 1_700_000_000_000


@pytest.fixture
def doc():
    return create_default_state(TS)


def test_add_folder_appends_after_root_siblings(doc):
    folder = add_folder(doc, "  Work  ", now=TS + 1)

    assert folder["name"] == "Work"
    assert folder["parentId"] == "all"
    assert folder["order"] == 3
    assert folder["id"] in folder_ids_of(doc)
    assert [f["id"] for f in doc["folders"]][-1] == "archive"


def test_add_folder_validates_input(doc):
    with pytest.raises(ValueError):
        add_folder(doc, "   ")
    with pytest.raises(KeyError):
        add_folder(doc, "Child", parent_id="ghost")


def test_rename_folder(doc):
    rename_folder(doc, "inbox", "Incoming", now=TS + 5)

    inbox = next(f for f in doc["folders"] if f["id"] == "inbox")
    assert inbox["name"] == "Incoming"
    assert inbox["updatedAt"] == TS + 5


def test_delete_folder_reparents_children_and_unfiles_tasks(doc):
    parent = add_folder(doc, "Projects", now=TS)
    child = add_folder(doc, "Garden", parent_id=parent["id"], now=TS)
    task = add_task(doc, "buy seeds", folder_id=parent["id"], now=TS)
    select_folder(doc, parent["id"])
    doc["ui"]["expandedFolderIds"].append(parent["id"])

    delete_folder(doc, parent["id"], now=TS + 1)

    assert parent["id"] not in folder_ids_of(doc)
    garden = next(f for f in doc["folders"] if f["id"] == child["id"])
    assert garden["parentId"] == "all"
    assert doc["tasks"][0]["id"] == task["id"]
    assert doc["tasks"][0]["folderId"] is None
    assert doc["ui"]["selectedFolderId"] == "all"
    assert parent["id"] not in doc["ui"]["expandedFolderIds"]


def test_system_folders_cannot_be_deleted(doc):
    with pytest.raises(ValueError):
        delete_folder(doc, "all")
    with pytest.raises(ValueError):
        delete_folder(doc, "archive")


def test_add_task_orders_within_folder(doc):
    first = add_task(doc, "one", folder_id="inbox", now=TS)
    second = add_task(doc, "two", folder_id="inbox", now=TS)
    other = add_task(doc, "three", folder_id="personal", now=TS)

    assert (first["order"], second["order"], other["order"]) == (0, 1, 0)


def test_add_task_into_system_folder_is_unfiled(doc):
    task = add_task(doc, "loose", folder_id="all")

    assert task["folderId"] is None


def test_add_task_validation(doc):
    with pytest.raises(ValueError):
        add_task(doc, "")
    with pytest.raises(KeyError):
        add_task(doc, "x", folder_id="ghost")
    with pytest.raises(ValueError):
        add_task(doc, "x", planned_for="soon")


def test_complete_and_reopen_task(doc):
    task = add_task(doc, "ship it", folder_id="inbox", now=TS)

    complete_task(doc, task["id"], now=TS + 10)
    assert doc["tasks"] == []
    archived = doc["archivedTasks"][0]
    assert archived["completed"] is True
    assert archived["completedAt"] == TS + 10

    reopen_task(doc, task["id"], now=TS + 20)
    assert doc["archivedTasks"] == []
    reopened = doc["tasks"][0]
    assert reopened["completed"] is False
    assert "completedAt" not in reopened
    assert reopened["folderId"] == "inbox"


def test_reopen_into_deleted_folder_is_unfiled(doc):
    folder = add_folder(doc, "Temp", now=TS)
    task = add_task(doc, "x", folder_id=folder["id"], now=TS)
    complete_task(doc, task["id"], now=TS)
    doc["folders"] = [f for f in doc["folders"] if f["id"] != folder["id"]]

    reopened = reopen_task(doc, task["id"], now=TS)

    assert reopened["folderId"] is None


def test_task_text_and_planned_for(doc):
    task = add_task(doc, "draft", now=TS)

    update_task_text(doc, task["id"], " final ", now=TS + 1)
    set_planned_for(doc, task["id"], "2024-06-01", now=TS + 2)
    assert task["text"] == "final"
    assert task["plannedFor"] == "2024-06-01"

    set_planned_for(doc, task["id"], None, now=TS + 3)
    assert "plannedFor" not in task
    with pytest.raises(ValueError):
        set_planned_for(doc, task["id"], "06/01/2024")
    with pytest.raises(KeyError):
        update_task_text(doc, "missing", "x")


def test_view_mode_and_selection(doc):
    set_folder_view_mode(doc, "inbox", "week", now=TS)
    select_folder(doc, "personal", "tasks")

    inbox = next(f for f in doc["folders"] if f["id"] == "inbox")
    assert inbox["viewMode"] == "week"
    assert doc["ui"]["selectedFolderId"] == "personal"
    assert doc["ui"]["activeScreen"] == "tasks"
    with pytest.raises(ValueError):
        set_folder_view_mode(doc, "inbox", "grid")
    with pytest.raises(ValueError):
        select_folder(doc, "inbox", "settings")
    with pytest.raises(KeyError):
        select_folder(doc, "ghost")
