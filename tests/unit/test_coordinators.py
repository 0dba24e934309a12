from datetime import datetime, timedelta, timezone

import pytest

from src.core.exceptions import (
    ImageNotFoundError,
    InvalidStateError,
    PersistenceError,
    RetryLimitReachedError,
    SubprocessFailureError,
    ValidationError,
)
from src.modules.wardrobe.models import ProcessingStatus
from src.pipeline.coordinators import audit_images, dispatch_pending, recover_stalled


# =============================================================================
# Ingestion
# =============================================================================

def test_upload_persists_original_and_launches_detached(ingestion, launcher, tracker, storage, image_bytes):
    data = image_bytes(size=(640, 480), fmt="JPEG")

    record = ingestion.upload_and_process("user-1", data, "blue-shirt.jpg")

    assert record.processing_status == ProcessingStatus.PENDING.value
    assert record.original_url == f"/uploads/clothing/user-1/original_{record.id}.jpg"
    assert record.original_filename == "blue-shirt.jpg"
    assert (record.mime_type, record.width, record.height, record.size) == ("image/jpeg", 640, 480, len(data))
    assert storage.resolve_url(record.original_url).read_bytes() == data
    assert launcher.launches == [(record.id, False)]
    assert tracker.get(record.id).processing_status == ProcessingStatus.PENDING.value


def test_extension_follows_decoded_format(ingestion, image_bytes):
    record = ingestion.upload_and_process("user-1", image_bytes(fmt="WEBP"), "photo.jpg")

    assert record.original_url.endswith(f"original_{record.id}.webp")
    assert record.mime_type == "image/webp"


@pytest.mark.parametrize("data", [b"", b"GIF89a but not really"])
def test_undecodable_upload_is_rejected(ingestion, launcher, tracker, storage, data):
    with pytest.raises(ValidationError):
        ingestion.upload_and_process("user-1", data)

    assert launcher.launches == []
    assert tracker.processing_stats()["total"] == 0
    assert not any(storage.upload_root.rglob("original_*"))


def test_unsafe_owner_id_is_rejected(ingestion, launcher, image_bytes):
    with pytest.raises(ValidationError):
        ingestion.upload_and_process("../etc", image_bytes())

    assert launcher.launches == []


def test_database_failure_removes_original(ingestion, tracker, storage, launcher, image_bytes, monkeypatch):
    def broken_create(record):
        raise PersistenceError("Failed to create image record: disk I/O error")

    monkeypatch.setattr(tracker, "create", broken_create)

    with pytest.raises(PersistenceError):
        ingestion.upload_and_process("user-1", image_bytes())

    assert not any(storage.upload_root.rglob("original_*"))
    assert launcher.launches == []


def test_launch_failure_does_not_fail_the_upload(ingestion, launcher, tracker, image_bytes, monkeypatch):
    def broken_launch(image_id, claimed=False):
        raise ConnectionError("broker unreachable")

    monkeypatch.setattr(launcher, "launch", broken_launch)

    record = ingestion.upload_and_process("user-1", image_bytes())

    assert tracker.get(record.id).processing_status == ProcessingStatus.PENDING.value


# =============================================================================
# Retry
# =============================================================================

def _failed_record(ingestion, make_runner, failing_remover, image_bytes):
    remover = failing_remover(SubprocessFailureError("Background removal failed: boom"))
    runner = make_runner(remover)
    record = ingestion.upload_and_process("user-1", image_bytes())
    runner.run(record.id)
    return record, runner, remover


def test_retry_relaunches_from_background_removal(ingestion, retry, launcher, make_runner, failing_remover, tracker, image_bytes, remover):
    record, _, _ = _failed_record(ingestion, make_runner, failing_remover, image_bytes)

    retried = retry.retry_processing(record.id)

    assert retried.processing_status == ProcessingStatus.PROCESSING.value
    assert retried.processing_error is None
    assert launcher.launches[-1] == (record.id, True)

    # The launched run reuses the persisted original
    assert make_runner(remover).run(record.id, claimed=True) == ProcessingStatus.COMPLETED.value
    assert remover.calls[0][0].name == f"original_{record.id}.jpg"
    done = tracker.get(record.id)
    assert done.processing_status == ProcessingStatus.COMPLETED.value
    assert done.attempt_count == 1
    assert done.processing_error is None


def test_retries_are_bounded(ingestion, retry, launcher, make_runner, failing_remover, tracker, config, image_bytes):
    record, runner, remover = _failed_record(ingestion, make_runner, failing_remover, image_bytes)

    for _ in range(config.max_retries):
        retry.retry_processing(record.id)
        runner.run(record.id, claimed=True)

    before = tracker.get(record.id)
    assert before.attempt_count == config.max_retries + 1
    assert before.processing_error == f"Background removal failed: boom [Attempt: {config.max_retries + 1}]"
    launches = len(launcher.launches)

    with pytest.raises(RetryLimitReachedError) as exc_info:
        retry.retry_processing(record.id)

    assert exc_info.value.message == f"Max retries ({config.max_retries}) reached"
    assert remover.calls == config.max_retries + 1
    assert len(launcher.launches) == launches
    after = tracker.get(record.id)
    assert after.processing_status == ProcessingStatus.FAILED.value
    assert after.processing_error == before.processing_error
    assert after.attempt_count == before.attempt_count


@pytest.mark.parametrize("status", [ProcessingStatus.PENDING, ProcessingStatus.PROCESSING])
def test_retry_rejects_non_failed_records(ingestion, retry, launcher, tracker, image_bytes, status):
    record = ingestion.upload_and_process("user-1", image_bytes())
    if status == ProcessingStatus.PROCESSING:
        tracker.claim(record.id, ProcessingStatus.PENDING)
    before = tracker.get(record.id)
    launches = len(launcher.launches)

    with pytest.raises(InvalidStateError):
        retry.retry_processing(record.id)

    after = tracker.get(record.id)
    assert after.processing_status == status.value
    assert after.updated_at == before.updated_at
    assert len(launcher.launches) == launches


def test_retry_rejects_completed_records(ingestion, retry, runner, image_bytes):
    record = ingestion.upload_and_process("user-1", image_bytes())
    runner.run(record.id)

    with pytest.raises(InvalidStateError):
        retry.retry_processing(record.id)


def test_overlapping_retry_loses_the_claim(ingestion, retry, launcher, make_runner, failing_remover, tracker, image_bytes, monkeypatch):
    record, _, _ = _failed_record(ingestion, make_runner, failing_remover, image_bytes)
    stale = tracker.get(record.id)
    # Another retry claims the record after this one has read it
    assert tracker.claim(record.id, ProcessingStatus.FAILED) is True
    monkeypatch.setattr(tracker, "get_or_raise", lambda image_id, owner_id=None: stale)
    launches = len(launcher.launches)

    with pytest.raises(InvalidStateError) as exc_info:
        retry.retry_processing(record.id)

    assert exc_info.value.details["status"] == ProcessingStatus.PROCESSING.value
    assert len(launcher.launches) == launches
    assert tracker.get(record.id).processing_status == ProcessingStatus.PROCESSING.value


def test_retry_of_unknown_or_foreign_record(ingestion, retry, make_runner, failing_remover, image_bytes):
    record, _, _ = _failed_record(ingestion, make_runner, failing_remover, image_bytes)

    with pytest.raises(ImageNotFoundError):
        retry.retry_processing("missing")
    with pytest.raises(ImageNotFoundError):
        retry.retry_processing(record.id, owner_id="someone-else")


# =============================================================================
# Housekeeping
# =============================================================================

def test_recover_stalled_fails_old_processing_records(ingestion, retry, tracker, image_bytes):
    stuck = ingestion.upload_and_process("user-1", image_bytes())
    tracker.claim(stuck.id, ProcessingStatus.PENDING)
    waiting = ingestion.upload_and_process("user-1", image_bytes())

    assert recover_stalled(tracker, 600) == []

    later = datetime.now(timezone.utc) + timedelta(seconds=601)
    assert recover_stalled(tracker, 600, now=later) == [stuck.id]

    failed = tracker.get(stuck.id)
    assert failed.processing_status == ProcessingStatus.FAILED.value
    assert failed.processing_error == "Processing stalled for more than 600s [Attempt: 1]"
    assert tracker.get(waiting.id).processing_status == ProcessingStatus.PENDING.value

    # Recovered records are retryable
    assert retry.retry_processing(stuck.id).processing_status == ProcessingStatus.PROCESSING.value


def test_dispatch_pending_relaunches_old_pending_records(ingestion, launcher, tracker, image_bytes):
    record = ingestion.upload_and_process("user-1", image_bytes())
    launcher.launches.clear()

    assert dispatch_pending(tracker, launcher, older_than_seconds=60) == []

    later = datetime.now(timezone.utc) + timedelta(seconds=120)
    assert dispatch_pending(tracker, launcher, older_than_seconds=60, now=later) == [record.id]
    assert launcher.launches == [(record.id, False)]


def test_audit_reports_and_deletes_orphans(ingestion, runner, tracker, storage, image_bytes):
    healthy = ingestion.upload_and_process("user-1", image_bytes())
    orphan = ingestion.upload_and_process("user-1", image_bytes())
    runner.run(healthy.id)
    runner.run(orphan.id)
    storage.delete(storage.resolve_url(tracker.get(orphan.id).thumbnail_url))

    report = {entry["image_id"]: entry for entry in audit_images(tracker, storage, "user-1")}
    assert report[healthy.id]["orphan"] is False
    assert report[orphan.id]["orphan"] is True
    assert report[orphan.id]["files"]["thumbnail"] is False

    audit_images(tracker, storage, "user-1", delete_orphans=True)

    assert tracker.get(orphan.id) is None
    assert tracker.get(healthy.id) is not None
    assert not storage.resolve_url(orphan.original_url).exists()
