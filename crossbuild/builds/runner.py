"""Container build runner.

This module handles:
- Composing container runtime commands for a platform build
- Executing the build as a pass-through process
- Capturing container output to a per-job log file
- Enforcing the optional build timeout and run cancellation

Build tool output is never parsed; the container's exit status is the
only signal taken from it.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from crossbuild.types import BuildErrorKind, BuildStatus, WorkspacePaths

if TYPE_CHECKING:
    from crossbuild.pipeline.matrix import PlatformEntry

logger = logging.getLogger(__name__)

# Mount points inside the build image
CONTAINER_SOURCE_MOUNT = "/app"
CONTAINER_ENTRYPOINT_MOUNT = "/entrypoint.sh"

# Seconds between checks for timeout and cancellation while a build runs
POLL_INTERVAL = 0.5

# Seconds to wait for a container to stop after kill
STOP_TIMEOUT = 30


class BuildError(Exception):
    """Raised when a container build does not succeed."""

    def __init__(
        self,
        message: str,
        kind: BuildErrorKind = BuildErrorKind.BUILD_FAILED,
        exit_code: int | None = None,
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = kind.value
        self.exit_code = exit_code
        self.log_path = log_path


@dataclass
class BuildJob:
    """A single platform build.

    Attributes:
        entry: Matrix entry being built.
        source_root: Workspace mounted read-write at /app.
        build_image: Prebuilt build-environment image reference.
        entrypoint: Script mounted read-only at /entrypoint.sh.
        env: Extra environment passed into the container.
        status: Current job status.
        started_at: Time the container was launched.
        finished_at: Time the job reached a final status.
        error_type: Error code when failed.
        error_message: Error details when failed.
    """

    entry: PlatformEntry
    source_root: Path
    build_image: str
    entrypoint: Path
    env: dict[str, str] = field(default_factory=dict)
    status: BuildStatus = BuildStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_type: str | None = None
    error_message: str | None = None

    def mark_running(self) -> None:
        """Mark this job as running."""
        if self.status != BuildStatus.PENDING:
            raise ValueError(f"cannot start job in state {self.status.value}")
        self.status = BuildStatus.RUNNING
        self.started_at = datetime.now(timezone.utc)

    def mark_succeeded(self) -> None:
        """Mark this job as succeeded."""
        if self.status != BuildStatus.RUNNING:
            raise ValueError(f"cannot succeed job in state {self.status.value}")
        self.status = BuildStatus.SUCCEEDED
        self.finished_at = datetime.now(timezone.utc)

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this job as failed.

        A succeeded job may still be failed later (e.g. missing artifacts).

        Args:
            error_type: Type/category of the error.
            message: Error message details.
        """
        if self.status == BuildStatus.FAILED:
            return
        self.status = BuildStatus.FAILED
        self.finished_at = datetime.now(timezone.utc)
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this job succeeded."""
        return self.status == BuildStatus.SUCCEEDED


@dataclass
class BuildResult:
    """Result of a successful container build.

    Attributes:
        workspace: Host-visible workspace and log locations.
        exit_code: Container exit code.
        started_at: Build start time.
        finished_at: Build finish time.
        command: The command that was executed.
        container_name: Name given to the container.
    """

    workspace: WorkspacePaths
    exit_code: int
    started_at: datetime
    finished_at: datetime
    command: str
    container_name: str

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


def make_container_name(entry: PlatformEntry) -> str:
    """Return a unique container name for an entry."""
    return f"crossbuild-{entry.slug}-{uuid.uuid4().hex[:8]}"


def compose_container_command(
    job: BuildJob,
    runtime: str = "docker",
    container_name: str | None = None,
) -> list[str]:
    """Compose the container runtime command for a build job.

    Args:
        job: Build job to run.
        runtime: Container runtime executable.
        container_name: Optional name for the container.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [runtime, "run", "--rm"]

    if container_name:
        cmd.extend(["--name", container_name])

    cmd.extend(["--platform", job.entry.platform_tag])

    # Source tree read-write so outputs land in the host workspace
    cmd.extend(["-v", f"{job.source_root}:{CONTAINER_SOURCE_MOUNT}"])
    cmd.extend(["-v", f"{job.entrypoint}:{CONTAINER_ENTRYPOINT_MOUNT}:ro"])

    for key in sorted(job.env):
        cmd.extend(["-e", f"{key}={job.env[key]}"])

    cmd.append(job.build_image)
    return cmd


class ContainerBuildRunner:
    """Runs one platform build inside an isolated container."""

    def __init__(
        self,
        log_dir: Path,
        runtime: str = "docker",
        timeout: int | None = None,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self.log_dir = log_dir
        self.runtime = runtime
        self.timeout = timeout
        self.poll_interval = poll_interval

    def log_path_for(self, job: BuildJob) -> Path:
        """Return the log file location for a job."""
        return self.log_dir / f"{job.entry.slug}.log"

    def run(
        self,
        job: BuildJob,
        cancel_event: threading.Event | None = None,
    ) -> BuildResult:
        """Execute a build job.

        Args:
            job: Pending build job. Its status is updated in place.
            cancel_event: Optional event; when set, the container is killed.

        Returns:
            BuildResult for a zero exit status.

        Raises:
            BuildError: On nonzero exit, timeout, launch failure or cancellation.
        """
        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.log_path_for(job)
        container_name = make_container_name(job.entry)

        cmd = compose_container_command(job, self.runtime, container_name)
        cmd_str = shlex.join(cmd)
        logger.info("[%s] Executing build: %s", job.entry.platform_tag, cmd_str)
        logger.info("[%s] Build log: %s", job.entry.platform_tag, log_path)

        job.mark_running()
        started_at = job.started_at or datetime.now(timezone.utc)

        try:
            with log_path.open("w") as log_file:
                log_file.write(f"# Command: {cmd_str}\n")
                log_file.write(f"# Started: {started_at.isoformat()}\n")
                log_file.write(f"# Workspace: {job.source_root}\n")
                log_file.write("# " + "=" * 70 + "\n\n")
                log_file.flush()

                proc = subprocess.Popen(
                    cmd,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                )
                exit_code = self._wait(job, proc, container_name, log_path, cancel_event)
        except OSError as e:
            message = f"Failed to launch container: {e}"
            logger.error("[%s] %s", job.entry.platform_tag, message)
            job.mark_failed(error_type=BuildErrorKind.LAUNCH_FAILED.value, message=message)
            raise BuildError(
                message,
                kind=BuildErrorKind.LAUNCH_FAILED,
                log_path=log_path,
            ) from e
        except BuildError as e:
            job.mark_failed(error_type=e.code, message=str(e))
            with log_path.open("a") as log_file:
                log_file.write(f"\n# {e.code.upper()}: {e}\n")
            raise

        finished_at = datetime.now(timezone.utc)
        with log_path.open("a") as log_file:
            log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
            log_file.write(f"# Exit code: {exit_code}\n")
            duration = (finished_at - started_at).total_seconds()
            log_file.write(f"# Duration: {duration:.1f}s\n")

        if exit_code != 0:
            message = f"Build failed with exit code {exit_code}"
            logger.error("[%s] %s. See log: %s", job.entry.platform_tag, message, log_path)
            job.mark_failed(error_type=BuildErrorKind.BUILD_FAILED.value, message=message)
            raise BuildError(
                message,
                kind=BuildErrorKind.BUILD_FAILED,
                exit_code=exit_code,
                log_path=log_path,
            )

        job.mark_succeeded()
        logger.info("[%s] Build succeeded in %.1fs", job.entry.platform_tag, duration)

        return BuildResult(
            workspace=WorkspacePaths(root=job.source_root, log_path=log_path),
            exit_code=exit_code,
            started_at=started_at,
            finished_at=finished_at,
            command=cmd_str,
            container_name=container_name,
        )

    def _wait(
        self,
        job: BuildJob,
        proc: subprocess.Popen,
        container_name: str,
        log_path: Path,
        cancel_event: threading.Event | None,
    ) -> int:
        """Wait for the container process, honouring timeout and cancellation."""
        deadline = time.monotonic() + self.timeout if self.timeout else None
        while True:
            try:
                return proc.wait(timeout=self.poll_interval)
            except subprocess.TimeoutExpired:
                pass

            if cancel_event is not None and cancel_event.is_set():
                logger.warning("[%s] Run cancelled, stopping container", job.entry.platform_tag)
                self.stop_container(proc, container_name)
                raise BuildError(
                    "Build cancelled",
                    kind=BuildErrorKind.CANCELLED,
                    exit_code=proc.returncode,
                    log_path=log_path,
                )

            if deadline is not None and time.monotonic() >= deadline:
                logger.error(
                    "[%s] Build timed out after %s seconds. See log: %s",
                    job.entry.platform_tag,
                    self.timeout,
                    log_path,
                )
                self.stop_container(proc, container_name)
                raise BuildError(
                    f"Build timed out after {self.timeout} seconds",
                    kind=BuildErrorKind.TIMEOUT,
                    exit_code=-1,
                    log_path=log_path,
                )

    def stop_container(self, proc: subprocess.Popen, container_name: str) -> None:
        """Kill a running container and reap its runtime client process."""
        try:
            subprocess.run(
                [self.runtime, "kill", container_name],
                capture_output=True,
                timeout=STOP_TIMEOUT,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Failed to kill container %s: %s", container_name, e)

        proc.terminate()
        try:
            proc.wait(timeout=STOP_TIMEOUT)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()


__all__ = [
    "CONTAINER_ENTRYPOINT_MOUNT",
    "CONTAINER_SOURCE_MOUNT",
    "BuildError",
    "BuildJob",
    "BuildResult",
    "ContainerBuildRunner",
    "compose_container_command",
    "make_container_name",
]
