import pytest
from sqlalchemy.orm import sessionmaker
from sqlmodel import Session

from src.core.database import build_engine, create_db_and_tables
from src.modules.wardrobe.models import ProcessingStatus
from src.pipeline.coordinators import IngestionCoordinator
from src.pipeline.launcher import CeleryLauncher, ThreadLauncher, build_launcher
from src.pipeline.runner import build_runner
from src.pipeline.tracker import StatusTracker


@pytest.fixture
def file_tracker(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'pipeline.db'}")
    create_db_and_tables(engine)
    yield StatusTracker(sessionmaker(engine, class_=Session, expire_on_commit=False))
    engine.dispose()


def test_build_launcher_kinds(runner):
    assert isinstance(build_launcher("celery"), CeleryLauncher)

    threaded = build_launcher("Thread", runner_factory=lambda: runner, max_workers=2)
    assert isinstance(threaded, ThreadLauncher)
    threaded.shutdown()

    with pytest.raises(ValueError):
        build_launcher("thread")
    with pytest.raises(ValueError):
        build_launcher("cron")


def test_thread_launcher_runs_uploads_in_parallel(file_tracker, storage, config, remover, image_bytes):
    launcher = ThreadLauncher(lambda: build_runner(file_tracker, storage, config, remover=remover), max_workers=2)
    ingestion = IngestionCoordinator(file_tracker, storage, launcher, config)

    uploads = [
        ingestion.upload_and_process("user-1", image_bytes()),
        ingestion.upload_and_process("user-2", image_bytes(fmt="PNG")),
    ]
    assert [r.processing_status for r in uploads] == [ProcessingStatus.PENDING.value] * 2

    launcher.shutdown(wait=True)

    for record in uploads:
        done = file_tracker.get(record.id)
        assert done.processing_status == ProcessingStatus.COMPLETED.value
        assert done.thumbnail_url is not None
    assert len(remover.calls) == 2


def test_thread_launcher_returns_the_run_outcome(runner, ingestion, image_bytes):
    record = ingestion.upload_and_process("user-1", image_bytes())
    launcher = ThreadLauncher(lambda: runner, max_workers=1)

    future = launcher.launch(record.id)

    assert future.result(timeout=30) == ProcessingStatus.COMPLETED.value
    launcher.shutdown()


def test_process_image_task_runs_the_pipeline(ingestion, runner, tracker, image_bytes, monkeypatch):
    from src.pipeline import tasks

    monkeypatch.setattr(tasks, "default_runner", lambda: runner)
    record = ingestion.upload_and_process("user-1", image_bytes())

    result = tasks.process_image.apply(args=[record.id]).get()

    assert result == {"image_id": record.id, "status": ProcessingStatus.COMPLETED.value}
    assert tracker.get(record.id).processing_status == ProcessingStatus.COMPLETED.value


def test_celery_launcher_enqueues_process_image(ingestion, runner, tracker, image_bytes, monkeypatch):
    from src.core.celery_app import celery_app
    from src.pipeline import tasks

    monkeypatch.setattr(tasks, "default_runner", lambda: runner)
    monkeypatch.setattr(celery_app.conf, "task_always_eager", True)
    record = ingestion.upload_and_process("user-1", image_bytes())

    CeleryLauncher().launch(record.id)

    assert tracker.get(record.id).processing_status == ProcessingStatus.COMPLETED.value
