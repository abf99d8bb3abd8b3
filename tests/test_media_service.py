import base64
import json
import os
import time

import pytest

from core.errors import MediaError, PartialUploadError, ServerSyncError, StorageError
from database.models import EntityType
from services import local_store as ls
from services.media_service import EntityRef


def test_entity_ref_rejects_unknown_owner():
    assert EntityRef.of("appointment", "7") == EntityRef(EntityType.APPOINTMENT, 7)
    with pytest.raises(MediaError):
        EntityRef.of("invoice", 1)


def test_save_photo_copies_file_and_creates_row(media_service, photo):
    ls.assessment_items.insert_or_replace(
        {"riskassessmentitemid": 42, "itemprompt": "TV", "pending_sync": 0}
    )

    media = media_service.save_photo(
        photo(), "risk_assessment_item", 42, metadata={"width": 800}
    )

    assert media.file_name.startswith("risk_assessment_item_42_")
    assert media.file_name.endswith(".jpg")
    assert media.file_type == "image/jpeg"
    assert media.blob_url == ""
    assert media.pending_sync == 1
    assert media.uploaded_by == "surveyor-7"
    assert os.path.isfile(media.local_path)
    assert os.path.dirname(media.local_path) == str(media_service.media_dir)

    meta = json.loads(media.metadata)
    assert meta["fullQuality"] is True
    assert meta["originalSize"] == len(b"\xff\xd8jpeg-bytes")
    assert meta["width"] == 800

    item = ls.assessment_items.get_by_id(42)
    assert item.hasphoto == 1
    assert item.pending_sync == 1


def test_save_photo_accepts_file_uri(media_service, photo):
    source = photo("uri.png")
    media = media_service.save_photo(f"file://{source}", EntityType.APPOINTMENT, 3)
    assert media.file_type == "image/png"


def test_save_photo_missing_source(media_service, tmp_path):
    with pytest.raises(MediaError):
        media_service.save_photo(tmp_path / "nope.jpg", "appointment", 1)
    assert ls.media_files.get_all() == []


def test_photos_for_entity_and_delete(media_service, photo):
    first = media_service.save_photo(photo("a.jpg"), "appointment", 5)
    media_service.save_photo(photo("b.jpg"), "appointment", 5)
    media_service.save_photo(photo("c.jpg"), "appointment", 6)

    assert len(media_service.get_photos_for_entity("appointment", 5)) == 2

    assert media_service.delete_photo(first.media_id)
    remaining = media_service.get_photos_for_entity("appointment", 5)
    assert first.media_id not in [m.media_id for m in remaining]
    assert len(remaining) == 1


def test_get_local_photo_path(media_service, photo):
    media = media_service.save_photo(photo(), "appointment", 1)
    assert media_service.get_local_photo_path(media) is not None

    os.remove(media.local_path)
    assert media_service.get_local_photo_path(media) is None


def test_upload_isolates_failures(media_service, fake_gateway, photo):
    good = media_service.save_photo(photo("good.jpg"), "appointment", 1)
    bad = media_service.save_photo(photo("bad.jpg"), "appointment", 1)
    fake_gateway.upload_responses[bad.file_name] = {
        "success": False,
        "message": "Blob storage unavailable",
    }

    result = media_service.upload_pending_photos()

    assert result.success is False
    assert result.uploaded == 1
    assert result.errors == [
        {"mediaID": bad.media_id, "fileName": bad.file_name, "error": "Blob storage unavailable"}
    ]

    good_row = ls.media_files.get_by_id(good.media_id)
    assert good_row.pending_sync == 0
    assert good_row.blob_url == f"https://blob/{good.file_name}"

    bad_row = ls.media_files.get_by_id(bad.media_id)
    assert bad_row.pending_sync == 1
    assert bad_row.blob_url == ""

    with pytest.raises(PartialUploadError) as exc_info:
        result.raise_for_errors()
    assert exc_info.value.uploaded == 1


def test_upload_payload_contains_base64(media_service, fake_gateway, photo):
    media = media_service.save_photo(photo(content=b"abc"), "appointment", 9)

    result = media_service.upload_pending_photos()

    assert result.to_dict() == {"success": True, "uploaded": 1, "errors": []}
    sent = fake_gateway.uploads[0]
    assert sent["fileName"] == media.file_name
    assert sent["entityName"] == "appointment"
    assert sent["entityID"] == 9
    assert base64.b64decode(sent["base64Data"]) == b"abc"
    assert sent["isDeleted"] is False


def test_upload_missing_file_and_network_error(media_service, fake_gateway, photo):
    gone = media_service.save_photo(photo("gone.jpg"), "appointment", 1)
    os.remove(gone.local_path)
    offline = media_service.save_photo(photo("offline.jpg"), "appointment", 1)
    fake_gateway.upload_responses[offline.file_name] = ServerSyncError("timeout")

    result = media_service.upload_pending_photos()

    assert result.uploaded == 0
    assert {e["mediaID"] for e in result.errors} == {gone.media_id, offline.media_id}
    assert ls.media_files.count_pending() == 2


def test_upload_without_pending(media_service, fake_gateway):
    result = media_service.upload_pending_photos()
    assert result.success is True
    assert result.uploaded == 0
    assert fake_gateway.uploads == []


def test_download_photos_for_entity(media_service, fake_gateway):
    fake_gateway.media_listing = {
        "success": True,
        "data": [
            {
                "FileName": "appointment_5_1.jpg",
                "FileType": "image/jpeg",
                "BlobURL": "https://blob/appointment_5_1.jpg",
                "UploadedBy": "office",
                "Metadata": {"fullQuality": True},
            }
        ],
    }

    files = media_service.download_photos_for_entity("appointment", 5)

    assert len(files) == 1
    row = files[0]
    assert row.pending_sync == 0
    assert row.blob_url == "https://blob/appointment_5_1.jpg"
    assert json.loads(row.metadata) == {"fullQuality": True}
    assert os.path.isfile(row.local_path)

    # второй вызов не скачивает файл заново
    media_service.download_photos_for_entity("appointment", 5)
    assert len(fake_gateway.downloads) == 1


def test_download_falls_back_to_cache(media_service, fake_gateway, photo):
    cached = media_service.save_photo(photo(), "appointment", 5)
    fake_gateway.media_listing = ServerSyncError("offline")

    files = media_service.download_photos_for_entity("appointment", 5)

    assert [f.media_id for f in files] == [cached.media_id]


def test_cleanup_and_storage_stats(media_service, photo):
    old = media_service.save_photo(photo("old.jpg", b"12345"), "appointment", 1)
    media_service.save_photo(photo("new.jpg", b"123"), "appointment", 1)
    past = time.time() - 40 * 86400
    os.utime(old.local_path, (past, past))

    assert media_service.get_storage_stats() == {"total_files": 2, "total_size": 8}
    assert media_service.cleanup_old_files(days_old=30) == 1
    assert media_service.get_storage_stats() == {"total_files": 1, "total_size": 3}


def test_stats_without_media_dir(media_service):
    assert media_service.get_storage_stats() == {"total_files": 0, "total_size": 0}
    assert media_service.cleanup_old_files() == 0


def test_second_of_three_uploads_fails(media_service, fake_gateway, photo):
    files = [
        media_service.save_photo(photo(f"{n}.jpg"), "appointment", 1) for n in range(3)
    ]
    fake_gateway.upload_responses[files[1].file_name] = ServerSyncError("HTTP 500")

    result = media_service.upload_pending_photos()

    assert result.uploaded == 2
    assert [e["fileName"] for e in result.errors] == [files[1].file_name]
    rows = [ls.media_files.get_by_id(f.media_id) for f in files]
    assert [r.pending_sync for r in rows] == [0, 1, 0]
    assert rows[0].blob_url and rows[2].blob_url
    assert rows[1].blob_url == ""


def test_local_write_failure_does_not_stop_batch(media_service, monkeypatch, photo):
    files = [
        media_service.save_photo(photo(f"{n}.jpg"), "appointment", 1) for n in range(3)
    ]
    original_update = media_service._store.update_fields

    def update_fields(media_id, **fields):
        if media_id == files[1].media_id:
            raise StorageError("media_files.update_fields: database is locked")
        return original_update(media_id, **fields)

    monkeypatch.setattr(media_service._store, "update_fields", update_fields)

    result = media_service.upload_pending_photos()

    assert result.uploaded == 2
    assert result.errors == [
        {
            "mediaID": files[1].media_id,
            "fileName": files[1].file_name,
            "error": "media_files.update_fields: database is locked",
        }
    ]
    rows = [ls.media_files.get_by_id(f.media_id) for f in files]
    assert [r.pending_sync for r in rows] == [0, 1, 0]


def test_malformed_upload_response_is_per_file_error(media_service, fake_gateway, photo):
    broken = media_service.save_photo(photo("broken.jpg"), "appointment", 1)
    listed = media_service.save_photo(photo("listed.jpg"), "appointment", 1)
    ok = media_service.save_photo(photo("ok.jpg"), "appointment", 1)
    fake_gateway.upload_responses[broken.file_name] = "<html>captive portal</html>"
    fake_gateway.upload_responses[listed.file_name] = {"success": True, "data": ["x"]}

    result = media_service.upload_pending_photos()

    assert result.uploaded == 1
    assert {e["mediaID"] for e in result.errors} == {broken.media_id, listed.media_id}
    assert ls.media_files.get_by_id(ok.media_id).pending_sync == 0


def test_soft_deleted_photo_is_uploaded_with_flag(media_service, fake_gateway, photo):
    media = media_service.save_photo(photo(), "appointment", 2)
    media_service.delete_photo(media.media_id)

    media_service.upload_pending_photos()

    (sent,) = fake_gateway.uploads
    assert sent["fileName"] == media.file_name
    assert sent["isDeleted"] is True
    assert ls.media_files.get_by_id(media.media_id).pending_sync == 0
