"""
Background Removal

The background-removal algorithm lives in an external tool that is run as an
isolated process. Its contract:

    <tool> <source> <destination>

    success: writes <destination>, prints the success marker on stdout, exit 0
    failure: prints "ERROR: <message>" on stderr, exits non-zero

A run only counts as successful when the exit code is 0, the marker was seen
AND the destination file exists. On any failure the destination is removed.
The tool runs in its own process group and a timeout kills the whole group,
so wrapper scripts cannot outlive the deadline.
"""

import os
import signal
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Union

from src.core.config import PipelineConfig
from src.core.exceptions import SubprocessFailureError, SubprocessTimeoutError
from src.core.logging import get_logger
from src.core.metrics import record_background_removal
from src.pipeline.imaging import discard

logger = get_logger(__name__)

# Seconds to wait for pipes to close after the process group was killed
KILL_GRACE_SECONDS = 2.0


class BackgroundRemover(ABC):
    """Capability that strips the background from an image file."""

    @abstractmethod
    def remove(self, source: Path, destination: Path) -> Path:
        """
        Write a transparent-background rendition of `source` to `destination`.

        Raises:
            SubprocessTimeoutError: the tool ran past its deadline
            SubprocessFailureError: the tool failed or produced no output
        """


def parse_tool_error(stderr: str) -> Optional[str]:
    """Return the message of the last `ERROR: <message>` line, if any."""
    message = None
    for line in stderr.splitlines():
        line = line.strip()
        if line.startswith("ERROR:"):
            message = line[len("ERROR:"):].strip()
    return message


class SubprocessBackgroundRemover(BackgroundRemover):
    """Runs the configured tool with a hard wall-clock timeout."""

    def __init__(
        self,
        tool: str,
        interpreter: Optional[str] = None,
        timeout_seconds: float = 30.0,
        success_marker: str = "SUCCESS",
    ):
        self.tool = tool
        self.interpreter = interpreter
        self.timeout_seconds = timeout_seconds
        self.success_marker = success_marker

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "SubprocessBackgroundRemover":
        return cls(
            tool=config.bg_removal_tool,
            interpreter=config.bg_removal_interpreter,
            timeout_seconds=config.bg_removal_timeout_seconds,
            success_marker=config.bg_removal_success_marker,
        )

    def build_command(self, source: Path, destination: Path) -> List[str]:
        command = [self.interpreter] if self.interpreter else []
        command += [self.tool, str(source), str(destination)]
        return command

    def remove(self, source: Path, destination: Path) -> Path:
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        # Never let a stale file from an earlier attempt pass verification
        discard(destination)

        command = self.build_command(source, destination)
        logger.info("background_removal_starting", source=str(source), command=command[0])
        start = time.monotonic()

        try:
            process = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            record_background_removal("failure")
            logger.error("background_removal_spawn_failed", error=str(e))
            raise SubprocessFailureError(f"Failed to start background removal tool: {e}")

        try:
            stdout, stderr = process.communicate(timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired:
            self._kill(process)
            discard(destination)
            record_background_removal("timeout")
            logger.error("background_removal_timeout", timeout_seconds=self.timeout_seconds)
            raise SubprocessTimeoutError(self.timeout_seconds)

        duration_ms = int((time.monotonic() - start) * 1000)
        self._verify(process.returncode, stdout or "", stderr or "", destination, duration_ms)

        record_background_removal("success")
        logger.info("background_removal_completed", destination=str(destination), duration_ms=duration_ms)
        return destination

    def _kill(self, process: subprocess.Popen):
        """Kill the tool and everything it spawned, then reap it without blocking."""
        if os.name == "posix":
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        else:
            process.kill()

        try:
            process.communicate(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            # A descendant escaped the group and still holds the pipes
            logger.warning("background_removal_pipes_held", pid=process.pid)
            for stream in (process.stdout, process.stderr):
                if stream is not None:
                    stream.close()
            process.wait(timeout=KILL_GRACE_SECONDS)

    def _verify(self, returncode: int, stdout: str, stderr: str, destination: Path, duration_ms: int):
        marker_seen = self.success_marker in stdout
        if returncode == 0 and marker_seen and destination.is_file():
            return

        discard(destination)
        record_background_removal("failure")

        if returncode != 0:
            reason = parse_tool_error(stderr) or stderr.strip() or "Unknown error"
            message = f"Background removal failed: {reason}"
        elif not marker_seen:
            message = "Background removal failed: success marker not reported"
        else:
            message = "Background removal failed: output file not created"

        logger.error(
            "background_removal_failed",
            returncode=returncode,
            marker_seen=marker_seen,
            stderr=stderr[-2000:],
            duration_ms=duration_ms,
        )
        raise SubprocessFailureError(message, returncode=returncode, stderr=stderr[-2000:] or None)


def remove_background(
    remover: BackgroundRemover,
    original_path: Union[str, Path],
    destination: Union[str, Path],
) -> Path:
    """Invoke a remover and double-check that it left a file behind."""
    result = remover.remove(Path(original_path), Path(destination))
    if not Path(result).is_file():
        discard(result)
        raise SubprocessFailureError("Background removal failed: output file not created")
    return Path(result)
