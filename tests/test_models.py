"""Tests for tag encoding and protocol frame models."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from boxpool.models import (
    VALID_GUEST_TRANSITIONS,
    AuditEvent,
    AuditEventType,
    GuestState,
    MigrationInfo,
    QmpFrame,
    ResourceCounts,
    ResourceKind,
    ResourceRecord,
    ResourceStatus,
    TagKey,
    VolumeSpec,
    parse_timestamp,
)

NOW = datetime(2026, 3, 14, 9, 26, 53, tzinfo=UTC)


# ============================================================================
# ResourceRecord <-> tags
# ============================================================================


class TestResourceRecordTags:
    """Typed records map onto a fixed tag namespace."""

    def test_new_free_instance_tags(self):
        tags = ResourceRecord.new_free(ResourceKind.INSTANCE, "i-1", now=NOW).to_tags()
        assert tags == {
            "boxpool:role": "instance",
            "boxpool:status": "free",
            "boxpool:instance-id": "i-1",
            "boxpool:created": "2026-03-14T09:26:53Z",
            "boxpool:lastused": "2026-03-14T09:26:53Z",
        }

    def test_volume_uses_volume_id_tag(self):
        tags = ResourceRecord.new_free(ResourceKind.VOLUME, "v-1", now=NOW).to_tags()
        assert tags[TagKey.VOLUME_ID.value] == "v-1"
        assert TagKey.INSTANCE_ID.value not in tags

    def test_owner_written_only_when_set(self):
        record = ResourceRecord.new_free(ResourceKind.INSTANCE, "i-1", now=NOW)
        assert TagKey.USER.value not in record.to_tags()
        busy = record.model_copy(update={"status": ResourceStatus.CONNECTED, "owner_user_id": "alice"})
        assert busy.to_tags()[TagKey.USER.value] == "alice"

    def test_from_tags_reads_back(self):
        record = ResourceRecord.new_free(ResourceKind.VOLUME, "v-9", now=NOW)
        decoded = ResourceRecord.from_tags(ResourceKind.VOLUME, record.to_tags())
        assert decoded == record

    def test_from_tags_without_id_is_none(self):
        assert ResourceRecord.from_tags(ResourceKind.INSTANCE, {"boxpool:status": "free"}) is None

    def test_from_tags_unknown_status_is_none(self):
        tags = {"boxpool:instance-id": "i-1", "boxpool:status": "deallocated"}
        assert ResourceRecord.from_tags(ResourceKind.INSTANCE, tags) is None

    def test_from_tags_bad_timestamp_becomes_none(self):
        tags = {"boxpool:instance-id": "i-1", "boxpool:status": "free", "boxpool:lastused": "yesterday"}
        record = ResourceRecord.from_tags(ResourceKind.INSTANCE, tags)
        assert record is not None
        assert record.last_used_at is None
        assert record.role == "instance"

    def test_record_is_frozen(self):
        record = ResourceRecord.new_free(ResourceKind.INSTANCE, "i-1", now=NOW)
        with pytest.raises(ValidationError):
            record.status = ResourceStatus.CONNECTED  # type: ignore[misc]


class TestTimestamps:
    def test_naive_timestamp_assumed_utc(self):
        assert parse_timestamp("2026-03-14T09:26:53") == NOW

    def test_empty_is_none(self):
        assert parse_timestamp("") is None
        assert parse_timestamp(None) is None


class TestSmallModels:
    def test_busy_count(self):
        assert ResourceCounts(free=2, connected=3, total=5).busy == 3

    def test_volume_spec_requires_snapshot(self):
        with pytest.raises(ValidationError):
            VolumeSpec(source_snapshot_id="")

    def test_audit_keys(self):
        event = AuditEvent(event_type=AuditEventType.ALLOCATE, resource_id="i-1", timestamp=NOW)
        assert event.partition_key == "2026-03-14"
        assert event.row_key == "20260314T092653.000000Z_allocate"


class TestGuestTransitions:
    def test_stopped_only_starts(self):
        assert VALID_GUEST_TRANSITIONS[GuestState.STOPPED] == {GuestState.STARTING}

    def test_every_state_can_reach_stopped_except_stopped(self):
        for state, targets in VALID_GUEST_TRANSITIONS.items():
            if state is not GuestState.STOPPED:
                assert GuestState.STOPPED in targets


# ============================================================================
# QMP frames
# ============================================================================


class TestQmpFrame:
    """Frame classification depends on which keys were present."""

    def test_empty_return_counts_as_return(self):
        assert QmpFrame.model_validate({"return": {}}).has_return

    def test_null_return_counts_as_return(self):
        assert QmpFrame.model_validate({"return": None}).has_return

    def test_event_has_no_return(self):
        frame = QmpFrame.model_validate({"event": "STOP", "data": {}, "timestamp": {"seconds": 1}})
        assert not frame.has_return
        assert frame.event == "STOP"

    def test_greeting(self):
        frame = QmpFrame.model_validate({"QMP": {"version": {}, "capabilities": []}})
        assert frame.is_greeting
        assert not frame.has_return

    def test_error_class_alias(self):
        frame = QmpFrame.model_validate({"error": {"class": "GenericError", "desc": "boom"}})
        assert frame.error is not None
        assert frame.error.error_class == "GenericError"
        assert frame.error.desc == "boom"


class TestMigrationInfo:
    def test_hyphenated_fields(self):
        info = MigrationInfo.model_validate(
            {
                "status": "active",
                "total-time": 1500,
                "expected-downtime": 30,
                "ram": {"transferred": 750, "remaining": 250, "total": 1000, "dirty-sync-count": 2},
            }
        )
        assert info.total_time == 1500
        assert info.expected_downtime == 30
        assert info.ram is not None
        assert info.ram.dirty_sync_count == 2
        assert info.progress_percent == pytest.approx(75.0)

    def test_progress_without_ram(self):
        assert MigrationInfo(status="setup").progress_percent == 0.0
