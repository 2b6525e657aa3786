"""Tests for record types and their wire format."""

from dataclasses import replace
from datetime import datetime, timezone

import pytest

from campsync.records import (
    JOURNAL,
    PROJECT,
    RECORD_TYPES,
    TODO,
    RecordValidationError,
    StoredRecord,
    SyncStatus,
    get_record_type,
)


def todo_wire(**overrides):
    data = {
        "id": "r1",
        "text": "Groceries",
        "done": False,
        "projectId": "default",
        "createdAt": "2026-01-05T09:00:00.000000+00:00",
        "updatedAt": "2026-01-05T09:00:00.000000+00:00",
        "isDeleted": False,
    }
    data.update(overrides)
    return data


class TestRecordTypes:
    """Tests for the record type registry."""

    def test_registry(self):
        """All three synchronized types are registered by name."""
        assert set(RECORD_TYPES) == {"journal", "project", "todo"}
        assert get_record_type("todo") is TODO

    def test_unknown_type(self):
        """Unknown names raise KeyError."""
        with pytest.raises(KeyError):
            get_record_type("sketch")

    def test_tables(self):
        """Each type maps to its own table."""
        assert JOURNAL.table == "journal_entries"
        assert PROJECT.table == "projects"
        assert TODO.table == "todos"


class TestParseRecord:
    """Tests for RecordType.parse_record()."""

    def test_parse_valid_todo(self):
        """A well-formed todo parses with defaults and a checksum."""
        record = TODO.parse_record(todo_wire())

        assert record.id == "r1"
        assert record.payload == {
            "text": "Groceries",
            "done": False,
            "projectId": "default",
            "completedAt": None,
        }
        assert record.updated_at == datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        assert record.is_deleted is False
        assert len(record.checksum) == 16

    def test_optional_fields_default(self):
        """Missing optional payload fields take their defaults."""
        record = PROJECT.parse_record(
            {"id": "p1", "name": "House", "updatedAt": "2026-01-05T09:00:00Z"}
        )
        assert record.payload["description"] == ""
        assert record.payload["progress"] == 0
        assert record.payload["tasks"] == []

    def test_created_at_defaults_to_updated_at(self):
        """createdAt falls back to updatedAt."""
        data = todo_wire()
        del data["createdAt"]
        record = TODO.parse_record(data)
        assert record.created_at == record.updated_at

    def test_client_checksum_is_ignored(self):
        """The checksum is recomputed, never trusted."""
        record = TODO.parse_record(todo_wire(checksum="0000000000000000"))
        assert record.checksum != "0000000000000000"
        assert record.checksum == TODO.compute_checksum(record.payload)

    def test_epoch_millisecond_timestamps(self):
        """Numeric timestamps from older clients are accepted."""
        record = TODO.parse_record(todo_wire(updatedAt=1767603600000, createdAt=1767603600000))
        assert record.updated_at == datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"id": ""},
            {"id": None},
            {"text": 5},
            {"done": "yes"},
            {"projectId": None},
            {"updatedAt": None},
            {"updatedAt": "not a date"},
            {"isDeleted": "false"},
            {"completedAt": "soon"},
        ],
    )
    def test_invalid_todo(self, overrides):
        """Malformed fields raise RecordValidationError."""
        with pytest.raises(RecordValidationError):
            TODO.parse_record(todo_wire(**overrides))

    def test_missing_required_field(self):
        """Required payload fields must be present."""
        with pytest.raises(RecordValidationError, match="title is required"):
            JOURNAL.parse_record({"id": "j1", "content": "x", "updatedAt": "2026-01-05T09:00:00Z"})

    def test_not_an_object(self):
        """Non-object records are rejected."""
        with pytest.raises(RecordValidationError):
            TODO.parse_record(["r1"])

    def test_progress_range(self):
        """Project progress must be a percentage."""
        with pytest.raises(RecordValidationError, match="progress"):
            PROJECT.parse_record(
                {"id": "p1", "name": "x", "progress": 150, "updatedAt": "2026-01-05T09:00:00Z"}
            )

    def test_progress_rejects_bool(self):
        """Booleans are not integers here."""
        with pytest.raises(RecordValidationError):
            PROJECT.parse_record(
                {"id": "p1", "name": "x", "progress": True, "updatedAt": "2026-01-05T09:00:00Z"}
            )

    def test_tasks_are_normalized(self):
        """Project tasks are reduced to id/text/done."""
        record = PROJECT.parse_record(
            {
                "id": "p1",
                "name": "House",
                "tasks": [{"id": "t1", "text": "Paint", "extra": 1}],
                "updatedAt": "2026-01-05T09:00:00Z",
            }
        )
        assert record.payload["tasks"] == [{"id": "t1", "text": "Paint", "done": False}]

    def test_tasks_require_ids(self):
        """Each task needs an id."""
        with pytest.raises(RecordValidationError, match="task id"):
            PROJECT.parse_record(
                {"id": "p1", "name": "x", "tasks": [{"text": "a"}], "updatedAt": "2026-01-05T09:00:00Z"}
            )

    @pytest.mark.parametrize(
        "overrides",
        [
            {"updatedAt": 10**20},
            {"updatedAt": "0001-01-01T00:00:00+05:00"},
            {"createdAt": float("inf")},
            {"completedAt": 10**20},
        ],
    )
    def test_out_of_range_timestamps(self, overrides):
        """Timestamps the datetime type cannot hold are validation errors."""
        with pytest.raises(RecordValidationError):
            TODO.parse_record(todo_wire(**overrides))

    @pytest.mark.parametrize(
        "overrides",
        [
            {"text": "milk \ud800"},
            {"id": "\udfff"},
            {"projectId": "p\ud800"},
            {"userId": "\ud800"},
            {"userId": 7},
        ],
    )
    def test_rejects_unencodable_text(self, overrides):
        """Lone surrogates cannot be hashed or stored."""
        with pytest.raises(RecordValidationError):
            TODO.parse_record(todo_wire(**overrides))

    def test_task_text_must_be_encodable(self):
        with pytest.raises(RecordValidationError, match="task text"):
            PROJECT.parse_record(
                {
                    "id": "p1",
                    "name": "x",
                    "tasks": [{"id": "t1", "text": "\ud800"}],
                    "updatedAt": "2026-01-05T09:00:00Z",
                }
            )


class TestChecksumFidelity:
    """Checksum behavior across serialization and metadata changes."""

    def test_wire_roundtrip_keeps_checksum(self):
        """Serialize, deserialize, recompute: same checksum."""
        original = PROJECT.parse_record(
            {
                "id": "p1",
                "name": "House",
                "description": "Renovation",
                "progress": 40,
                "tasks": [{"id": "t1", "text": "Paint", "done": True}],
                "updatedAt": "2026-01-05T09:00:00Z",
            }
        )
        restored = PROJECT.parse_record(PROJECT.to_wire(original))

        assert restored.checksum == original.checksum
        assert restored.payload == original.payload
        assert restored.updated_at == original.updated_at

    def test_metadata_does_not_affect_checksum(self):
        """Records differing only in sync metadata share a checksum."""
        record = TODO.parse_record(todo_wire())
        other = TODO.parse_record(
            todo_wire(updatedAt="2026-02-01T00:00:00Z", deviceId="device_b")
        )
        stored = StoredRecord(**vars(record), sync_status=SyncStatus.CONFLICT)

        assert other.checksum == record.checksum
        assert TODO.compute_checksum(stored.payload) == record.checksum

    def test_completed_at_not_checksummed(self):
        """Todo completion time is not content."""
        a = TODO.parse_record(todo_wire(done=True))
        b = TODO.parse_record(todo_wire(done=True, completedAt="2026-01-05T10:00:00Z"))
        assert a.checksum == b.checksum

    def test_same_content_considers_tombstone(self):
        """A tombstone of unchanged content is still a change."""
        record = TODO.parse_record(todo_wire())
        tombstone = replace(record, is_deleted=True)

        assert TODO.same_content(record, replace(record))
        assert not TODO.same_content(record, tombstone)


class TestToWire:
    """Tests for RecordType.to_wire()."""

    def test_camel_case_fields(self):
        """Wire form uses camelCase keys and canonical timestamps."""
        record = replace(
            TODO.parse_record(todo_wire(projectId="p9")),
            owner_user_id="alice",
            device_id="device_a",
        )
        wire = TODO.to_wire(record)

        assert wire["userId"] == "alice"
        assert wire["deviceId"] == "device_a"
        assert wire["projectId"] == "p9"
        assert wire["updatedAt"] == "2026-01-05T09:00:00.000000+00:00"
        assert wire["isDeleted"] is False
        assert wire["checksum"] == record.checksum

    def test_omits_absent_owner(self):
        """Device-local records carry no userId."""
        wire = TODO.to_wire(TODO.parse_record(todo_wire()))
        assert "userId" not in wire
