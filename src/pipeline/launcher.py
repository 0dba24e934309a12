"""
Detached Pipeline Launch

Coordinators hand an image id to a launcher and return immediately; the
launcher arranges for PipelineRunner.run() to execute somewhere else.

- CeleryLauncher: enqueue the process_image task (default)
- ThreadLauncher: in-process thread pool, for single-process deployments
"""

from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from src.core.logging import get_logger

logger = get_logger(__name__)


class PipelineLauncher(ABC):
    """Starts a pipeline run without waiting for it."""

    @abstractmethod
    def launch(self, image_id: str, claimed: bool = False) -> None:
        ...


class CeleryLauncher(PipelineLauncher):
    def launch(self, image_id: str, claimed: bool = False) -> None:
        from src.pipeline.tasks import process_image

        result = process_image.delay(image_id, claimed=claimed)
        logger.info("pipeline_enqueued", image_id=image_id, task_id=result.id, claimed=claimed)


class ThreadLauncher(PipelineLauncher):
    def __init__(self, runner_factory: Callable, max_workers: int = 4):
        self.runner_factory = runner_factory
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pipeline")

    def launch(self, image_id: str, claimed: bool = False) -> Future:
        future = self.executor.submit(self._run, image_id, claimed)
        logger.info("pipeline_submitted", image_id=image_id, claimed=claimed)
        return future

    def _run(self, image_id: str, claimed: bool) -> str:
        # Runner never raises for stage failures; anything escaping is a bug worth logging
        try:
            return self.runner_factory().run(image_id, claimed=claimed)
        except Exception:
            logger.exception("pipeline_thread_crashed", image_id=image_id)
            raise

    def shutdown(self, wait: bool = True):
        self.executor.shutdown(wait=wait)


def build_launcher(kind: str, runner_factory: Optional[Callable] = None, max_workers: int = 4) -> PipelineLauncher:
    kind = kind.lower()
    if kind == "celery":
        return CeleryLauncher()
    if kind == "thread":
        if runner_factory is None:
            raise ValueError("Thread launcher needs a runner factory")
        return ThreadLauncher(runner_factory, max_workers=max_workers)
    raise ValueError(f"Unknown pipeline launcher: {kind}")
