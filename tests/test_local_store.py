import pytest

from core.errors import StorageError
from database.models import DeletedEntity, MediaFile, RiskAssessmentItem
from services import local_store as ls
from services.local_ids import is_local_id


def _item(**overrides):
    data = {
        "riskassessmentitemid": 501,
        "riskassessmentcategoryid": 12,
        "itemprompt": "Television",
        "qty": 1,
        "price": 100.0,
        "notes": "lounge",
    }
    data.update(overrides)
    return data


def test_insert_marks_row_dirty_by_default(in_memory_db):
    ls.assessment_items.insert_or_replace(_item())

    pending = ls.assessment_items.get_pending_sync()
    assert [row.riskassessmentitemid for row in pending] == [501]
    assert ls.assessment_items.count_pending() == 1


def test_insert_with_explicit_clean_flag(in_memory_db):
    ls.assessment_items.insert_or_replace(_item(pending_sync=0))

    assert ls.assessment_items.get_pending_sync() == []
    assert ls.assessment_items.get_by_id(501).pending_sync == 0


def test_insert_ignores_unknown_fields(in_memory_db):
    ls.assessment_items.insert_or_replace(_item(unknownColumn="x"))
    assert ls.assessment_items.get_by_id(501).itemprompt == "Television"


def test_local_ids_are_negative_and_decreasing(in_memory_db):
    first = ls.assessment_items.insert_or_replace(_item(riskassessmentitemid=None))
    second = ls.assessment_items.insert_or_replace(_item(riskassessmentitemid=None))
    server = ls.assessment_items.insert_or_replace(_item(riskassessmentitemid=900))

    assert first == -1
    assert second == -2
    assert server == 900
    assert is_local_id(first) and is_local_id(second)
    assert not is_local_id(server)
    assert not is_local_id(None)


def test_local_ids_are_never_reused(in_memory_db):
    first = ls.assessment_items.insert_or_replace(_item(riskassessmentitemid=None))
    second = ls.assessment_items.insert_or_replace(_item(riskassessmentitemid=None))
    ls.assessment_items.delete(second)
    ls.assessment_items.remap_id(first, 9001)

    third = ls.assessment_items.insert_or_replace(_item(riskassessmentitemid=None))

    assert third == -3
    assert ls.assessment_items.get_by_id(9001).riskassessmentitemid == 9001


def test_local_ids_are_counted_per_table(in_memory_db):
    ls.assessment_items.insert_or_replace(_item(riskassessmentitemid=None))
    ls.assessment_items.insert_or_replace(_item(riskassessmentitemid=None))

    master_id = ls.assessment_masters.insert_or_replace({"riskassessmentid": None})

    assert master_id == -1
    assert "local_id_sequence" not in ls.get_table_stats()


def test_mark_synced_skips_rows_changed_since_submit(in_memory_db):
    ls.assessment_items.insert_or_replace(_item())
    ls.assessment_items.insert_or_replace(_item(riskassessmentitemid=502, notes=None))
    submitted = {row.riskassessmentitemid: row for row in ls.assessment_items.get_pending_sync()}
    ls.assessment_items.update_fields(501, price=999.0)

    assert ls.assessment_items.mark_synced([501, 502], submitted) == 1

    assert ls.assessment_items.get_by_id(501).pending_sync == 1
    assert ls.assessment_items.get_by_id(502).pending_sync == 0


def test_mark_synced_is_idempotent(in_memory_db):
    ls.assessment_items.insert_or_replace(_item())
    ls.assessment_items.insert_or_replace(_item(riskassessmentitemid=502))

    assert ls.assessment_items.mark_synced([501]) == 1
    row = ls.assessment_items.get_by_id(501)
    assert row.pending_sync == 0
    assert row.issynced == 1
    assert row.synctimestamp

    ls.assessment_items.mark_synced([501])
    assert ls.assessment_items.count_pending() == 1
    assert ls.assessment_items.get_by_id(501).pending_sync == 0


def test_mark_synced_unknown_id_is_noop(in_memory_db):
    assert ls.appointments.mark_synced([12345]) == 0


def test_update_fields_keeps_other_columns(in_memory_db):
    ls.assessment_items.insert_or_replace(_item(pending_sync=0))

    updated = ls.assessment_items.update_fields(501, price=250.0)

    assert updated.price == 250.0
    assert updated.notes == "lounge"
    assert updated.itemprompt == "Television"
    assert updated.pending_sync == 1
    assert updated.dateupdated


def test_update_fields_missing_row_returns_none(in_memory_db):
    assert ls.assessment_items.update_fields(777, price=1.0) is None


def test_full_replace_drops_omitted_columns(in_memory_db):
    ls.assessment_items.insert_or_replace(_item())
    ls.assessment_items.insert_or_replace({"riskassessmentitemid": 501, "price": 5.0})

    row = ls.assessment_items.get_by_id(501)
    assert row.price == 5.0
    assert row.notes is None


def test_delete_server_row_leaves_tombstone(in_memory_db):
    ls.assessment_items.insert_or_replace(_item())

    assert ls.assessment_items.delete(501)

    assert ls.assessment_items.get_by_id(501) is None
    tombstones = ls.get_pending_deletions()
    assert [(t.entity_type, t.entity_id) for t in tombstones] == [
        ("risk_assessment_item", 501)
    ]


def test_delete_local_row_has_no_tombstone(in_memory_db):
    local_id = ls.assessment_items.insert_or_replace(_item(riskassessmentitemid=None))

    assert ls.assessment_items.delete(local_id)
    assert ls.get_pending_deletions() == []


def test_drain_deletions(in_memory_db):
    DeletedEntity.create(entity_type="appointment", entity_id=1)
    DeletedEntity.create(entity_type="appointment", entity_id=2)
    first = ls.get_pending_deletions()[0]

    assert ls.drain_deletions([first.id]) == 1
    assert [t.entity_id for t in ls.get_pending_deletions()] == [2]
    assert ls.drain_deletions([]) == 0


def test_remap_id_moves_row_and_photos(in_memory_db):
    local_id = ls.assessment_items.insert_or_replace(_item(riskassessmentitemid=None))
    media_id = ls.media_files.insert_or_replace(
        {
            "file_name": "risk_assessment_item_-1_1.jpg",
            "entity_name": "risk_assessment_item",
            "entity_id": local_id,
        }
    )

    assert ls.assessment_items.remap_id(local_id, 9001)

    assert ls.assessment_items.get_by_id(local_id) is None
    moved = ls.assessment_items.get_by_id(9001)
    assert moved.itemprompt == "Television"
    assert RiskAssessmentItem.select().count() == 1
    assert ls.media_files.get_by_id(media_id).entity_id == 9001


def test_remap_missing_row(in_memory_db):
    assert not ls.assessment_items.remap_id(-5, 10)
    assert not ls.assessment_items.remap_id(10, 10)


def test_appointment_columns_use_server_names(in_memory_db):
    ls.appointments.insert_or_replace(
        {"appointment_id": 7, "start_time": "2024-01-01T09:00", "meeting_status": "scheduled"}
    )

    columns = {c.name for c in in_memory_db.get_columns("appointments")}
    assert {"appointmentID", "startTime", "meetingStatus", "pending_sync"} <= columns
    assert [a.appointment_id for a in ls.appointments.get_by_status("scheduled")] == [7]


def test_media_soft_delete_marks_for_resend(in_memory_db):
    media_id = ls.media_files.insert_or_replace(
        {"file_name": "a.jpg", "entity_name": "appointment", "entity_id": 7, "pending_sync": 0}
    )

    assert ls.media_files.delete(media_id)

    row = ls.media_files.get_by_id(media_id)
    assert row.is_deleted == 1
    assert row.pending_sync == 1
    assert ls.media_files.get_by_entity("appointment", 7) == []
    assert len(ls.media_files.get_by_entity("appointment", 7, include_deleted=True)) == 1
    assert ls.get_pending_deletions() == []

    assert ls.media_files.hard_delete(media_id)
    assert ls.media_files.get_by_id(media_id) is None


def test_table_stats_and_clear(in_memory_db):
    ls.assessment_items.insert_or_replace(_item())
    ls.assessment_items.insert_or_replace(_item(riskassessmentitemid=502, pending_sync=0))

    stats = ls.get_table_stats()
    assert stats["risk_assessment_items"] == {"total": 2, "pending": 1}
    assert stats["appointments"] == {"total": 0, "pending": 0}

    ls.clear_all_tables()
    assert ls.get_table_stats()["risk_assessment_items"]["total"] == 0


def test_recreate_all_tables(in_memory_db):
    ls.assessment_items.insert_or_replace(_item())
    ls.recreate_all_tables()
    assert ls.assessment_items.get_all() == []


def test_storage_errors_are_wrapped(in_memory_db):
    in_memory_db.drop_tables([MediaFile])

    with pytest.raises(StorageError) as exc_info:
        ls.media_files.get_all()
    assert exc_info.value.code == "STORAGE"


def test_upsert_twice_keeps_single_row(in_memory_db):
    ls.assessment_items.insert_or_replace(_item(description="Samsung", model="QE55"))
    ls.assessment_items.insert_or_replace(_item(description="Samsung", model="QE55"))

    assert RiskAssessmentItem.select().count() == 1
    row = ls.assessment_items.get_by_id(501)
    assert (row.description, row.model, row.price) == ("Samsung", "QE55", 100.0)


def test_price_edit_leaves_description_and_model(in_memory_db):
    ls.assessment_items.insert_or_replace(_item(description="Samsung", model="QE55"))

    ls.assessment_items.update_fields(501, price=120.0)

    row = ls.assessment_items.get_by_id(501)
    assert (row.description, row.model, row.price) == ("Samsung", "QE55", 120.0)
