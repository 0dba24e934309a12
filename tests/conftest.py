import io
import sys
from pathlib import Path
from typing import AsyncGenerator, List, Tuple

import pytest
from httpx import AsyncClient, ASGITransport
from PIL import Image
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from src.core.config import PipelineConfig
from src.core.storage import LocalStorage
from src.modules.wardrobe.models import ImageRecord  # noqa: F401
from src.pipeline.background import BackgroundRemover
from src.pipeline.coordinators import IngestionCoordinator, RetryCoordinator
from src.pipeline.launcher import PipelineLauncher
from src.pipeline.runner import build_runner
from src.pipeline.tracker import StatusTracker


# =============================================================================
# Test doubles
# =============================================================================

class FakeRemover(BackgroundRemover):
    """Turns near-white pixels transparent, standing in for the real tool."""

    def __init__(self):
        self.calls: List[Tuple[Path, Path]] = []

    def remove(self, source: Path, destination: Path) -> Path:
        self.calls.append((source, destination))
        with Image.open(source) as image:
            rgba = image.convert("RGBA")
        pixels = [
            (r, g, b, 0) if min(r, g, b) > 240 else (r, g, b, a)
            for r, g, b, a in rgba.getdata()
        ]
        rgba.putdata(pixels)
        destination.parent.mkdir(parents=True, exist_ok=True)
        rgba.save(destination, "PNG")
        return destination


class FailingRemover(BackgroundRemover):
    def __init__(self, error: Exception):
        self.error = error
        self.calls = 0

    def remove(self, source: Path, destination: Path) -> Path:
        self.calls += 1
        raise self.error


class RecordingLauncher(PipelineLauncher):
    """Records launches instead of running them; tests call the runner directly."""

    def __init__(self):
        self.launches: List[Tuple[str, bool]] = []

    def launch(self, image_id: str, claimed: bool = False) -> None:
        self.launches.append((image_id, claimed))


def make_image_bytes(size=(800, 600), color=(200, 30, 30), fmt="JPEG", background=None) -> bytes:
    """An image filled with `color`, optionally framed by a `background` border."""
    mode = "RGBA" if len(color) == 4 else "RGB"
    image = Image.new(mode, size, background or color)
    if background:
        w, h = size
        image.paste(Image.new(mode, (w // 2, h // 2), color), (w // 4, h // 4))
    buffer = io.BytesIO()
    image.save(buffer, fmt)
    return buffer.getvalue()


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def tracker(engine) -> StatusTracker:
    return StatusTracker(sessionmaker(engine, class_=Session, expire_on_commit=False))


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(root=str(tmp_path / "public"), upload_subdir="uploads/clothing")


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig(max_retries=3, bg_removal_timeout_seconds=5.0)


@pytest.fixture
def remover() -> FakeRemover:
    return FakeRemover()


@pytest.fixture
def launcher() -> RecordingLauncher:
    return RecordingLauncher()


@pytest.fixture
def runner(tracker, storage, config, remover):
    return build_runner(tracker, storage, config, remover=remover)


@pytest.fixture
def ingestion(tracker, storage, launcher, config) -> IngestionCoordinator:
    return IngestionCoordinator(tracker, storage, launcher, config)


@pytest.fixture
def retry(tracker, launcher, config) -> RetryCoordinator:
    return RetryCoordinator(tracker, launcher, config)


@pytest.fixture
def tool_script(tmp_path):
    """Write a throwaway background-removal tool and return its path."""
    def _write(body: str) -> str:
        path = tmp_path / f"tool_{len(list(tmp_path.glob('tool_*.py')))}.py"
        path.write_text("import shutil, sys, time\nsource, destination = sys.argv[1], sys.argv[2]\n" + body)
        return str(path)
    return _write


@pytest.fixture
def interpreter() -> str:
    return sys.executable


@pytest.fixture
async def client(tracker, storage, launcher, config) -> AsyncGenerator[AsyncClient, None]:
    from src.main import app
    from src.api.dependencies import get_launcher, get_pipeline_config, get_tracker
    from src.core.storage import get_storage

    app.dependency_overrides[get_tracker] = lambda: tracker
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_launcher] = lambda: launcher
    app.dependency_overrides[get_pipeline_config] = lambda: config

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def image_bytes():
    return make_image_bytes


@pytest.fixture
def make_runner(tracker, storage, config):
    """Build a runner around a specific remover (fakes or a subprocess one)."""
    def _make(remover: BackgroundRemover, pipeline_config: PipelineConfig = None):
        return build_runner(tracker, storage, pipeline_config or config, remover=remover)
    return _make


@pytest.fixture
def failing_remover():
    return FailingRemover
