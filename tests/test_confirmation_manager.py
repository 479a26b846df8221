"""Tests for the file-backed confirmation workflow."""

import json
import os

import pytest

from core.exceptions import ConfirmationError, ConfirmationNotFoundError, ConfirmationStateError
from safety.confirmation_manager import ConfirmationManager, ConfirmationStatus


@pytest.fixture
def manager(tmp_path):
    return ConfirmationManager(tmp_path / "confirmations")


def read_file(request):
    return json.loads(request.file_path.read_text(encoding="utf-8"))


def test_create_writes_camel_case_file(manager):
    request = manager.create("delete logs", "irreversible")
    assert len(request.id) == 8
    int(request.id, 16)
    assert request.file_path.name == f"confirm-{request.id}.json"

    data = read_file(request)
    assert set(data) == {"id", "action", "reason", "status", "createdAt", "resolvedAt"}
    assert data["status"] == "pending"
    assert data["resolvedAt"] is None


def test_create_approve_check(manager):
    request = manager.create("format disk", "dangerous")
    approved = manager.approve(request.id)
    assert approved.status == ConfirmationStatus.APPROVED
    assert approved.resolved_at is not None

    checked = manager.check(request.id)
    assert checked.status == ConfirmationStatus.APPROVED
    assert checked.resolved_at == approved.resolved_at
    assert checked.to_dict()["resolved_at"] is not None


def test_deny(manager):
    request = manager.create("x", "y")
    assert manager.deny(request.id).status == ConfirmationStatus.DENIED
    assert read_file(request)["status"] == "denied"


def test_resolving_twice_conflicts(manager):
    request = manager.create("x", "y")
    manager.approve(request.id)
    with pytest.raises(ConfirmationStateError) as exc:
        manager.deny(request.id)
    assert exc.value.code == "confirmation_conflict"
    assert manager.check(request.id).status == ConfirmationStatus.APPROVED


@pytest.mark.parametrize("bad_id", ["deadbeef", "not-hex!", "", "1234"])
def test_unknown_or_malformed_ids(manager, bad_id):
    for op in (manager.approve, manager.deny, manager.check):
        with pytest.raises(ConfirmationNotFoundError):
            op(bad_id)


def test_not_found_is_a_confirmation_error(manager):
    with pytest.raises(ConfirmationError):
        manager.approve("abcdef12")


def test_external_edit_is_seen_and_stamped(manager):
    request = manager.create("x", "y")
    data = read_file(request)
    data["status"] = "Approved"
    request.file_path.write_text(json.dumps(data), encoding="utf-8")

    checked = manager.check(request.id)
    assert checked.status == ConfirmationStatus.APPROVED
    assert checked.resolved_at is not None
    assert read_file(request)["resolvedAt"] is not None


def test_corrupt_or_missing_file_is_not_found(manager):
    request = manager.create("x", "y")
    request.file_path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfirmationNotFoundError):
        manager.check(request.id)

    other = manager.create("x", "y")
    os.remove(other.file_path)
    with pytest.raises(ConfirmationNotFoundError):
        manager.approve(other.id)


def test_binary_file_is_not_found_and_skipped_by_listing(manager):
    pending = manager.create("x", "y")
    broken = manager.create("x", "y")
    broken.file_path.write_bytes(b"\xff\xfe bad")
    (manager.directory / "confirm-0000abcd.json").write_bytes(b"\xff\xfe bad")

    for op in (manager.check, manager.approve, manager.deny):
        with pytest.raises(ConfirmationNotFoundError):
            op(broken.id)
    with pytest.raises(ConfirmationNotFoundError):
        manager.check("0000abcd")

    assert [r.id for r in manager.list_pending()] == [pending.id]
    assert [r.id for r in manager.list_all()] == [pending.id]


def test_list_pending_scans_directory(tmp_path):
    directory = tmp_path / "shared"
    first = ConfirmationManager(directory)
    a = first.create("a", "r")
    b = first.create("b", "r")
    first.approve(b.id)
    (directory / "confirm-zzzzzzzz.json").write_text("garbage", encoding="utf-8")
    (directory / f"confirm-{'0' * 8}.json").write_text("garbage", encoding="utf-8")

    # A fresh manager (e.g. after restart or in another process) sees the same state
    second = ConfirmationManager(directory)
    assert [r.id for r in second.list_pending()] == [a.id]
    assert {r.id for r in second.list_all()} == {a.id, b.id}


def test_list_pending_with_missing_directory(tmp_path):
    assert ConfirmationManager(tmp_path / "nope").list_pending() == []


def test_no_temp_files_left_behind(manager):
    request = manager.create("x", "y")
    manager.approve(request.id)
    assert [p.name for p in manager.directory.iterdir()] == [request.file_path.name]
