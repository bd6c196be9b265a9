"""
Unit tests for spfwatch/spf/history.py
"""

from __future__ import annotations

import pytest

from spfwatch.spf.history import (
    approve_operation,
    get_operation,
    latest_completed,
    list_operations,
    record_operation,
    revert_operation,
)
from spfwatch.spf.parser import parse_spf_string
from spfwatch.spf.types import FlatteningOptions, FlatteningResult

ORIGINAL = "v=spf1 include:_spf.google.com ip4:192.0.2.10 -all"
FLATTENED = "v=spf1 ip4:35.190.247.0/24 ip4:192.0.2.10 -all"


def _store(user_id="alice", domain="example.com", success=True, **kwargs):
    record = parse_spf_string(ORIGINAL, domain)
    result = FlatteningResult(
        success=success,
        flattened_record=FLATTENED if success else "",
        original_lookups=1,
        new_lookups=0 if success else 1,
        ip_count=2,
        resolved_ips=("35.190.247.0/24",),
        errors=() if success else ("No includes could be flattened",),
    )
    return record_operation(user_id, domain, record, result, ["_spf.google.com"], **kwargs)


def test_successful_run_is_pending(app):
    operation = _store(options=FlatteningOptions(consolidate_cidr=False))

    assert operation.id is not None
    assert operation.status == "pending"
    assert operation.trigger_type == "manual"
    assert operation.original_record == ORIGINAL
    assert operation.flattened_record == FLATTENED
    assert operation.new_lookup_count == 0
    assert operation.get_target_includes() == ["_spf.google.com"]
    assert operation.get_resolved_ips() == ["35.190.247.0/24"]
    assert operation.get_flattening_options()["consolidate_cidr"] is False


def test_failed_run_is_stored_as_failed(app):
    operation = _store(success=False)

    assert operation.status == "failed"
    assert operation.flattened_record is None
    assert operation.new_lookup_count is None
    assert operation.get_errors() == ["No includes could be flattened"]


def test_approve_then_revert(app):
    operation = _store()

    approved = approve_operation("alice", operation.id)
    assert approved.status == "completed"
    assert approved.completed_at is not None
    assert latest_completed("alice", "example.com").id == operation.id

    original = revert_operation("alice", operation.id)
    assert original == ORIGINAL
    assert get_operation("alice", operation.id).status == "reverted"
    assert latest_completed("alice", "example.com") is None


def test_only_pending_operations_can_be_approved(app):
    operation = _store(success=False)

    with pytest.raises(ValueError):
        approve_operation("alice", operation.id)


def test_only_completed_operations_can_be_reverted(app):
    operation = _store()

    with pytest.raises(ValueError):
        revert_operation("alice", operation.id)


def test_other_users_operations_are_not_found(app):
    operation = _store()

    assert get_operation("bob", operation.id) is None
    with pytest.raises(LookupError):
        approve_operation("bob", operation.id)
    with pytest.raises(LookupError):
        revert_operation("alice", 9999)


def test_list_operations_newest_first_and_filtered(app):
    first = _store()
    second = _store(trigger_type="auto_update")
    _store(domain="other.example")
    _store(user_id="bob")

    operations = list_operations("alice", "Example.com")

    assert [op.id for op in operations] == [second.id, first.id]
    assert operations[0].trigger_type == "auto_update"
    assert len(list_operations("alice")) == 3
