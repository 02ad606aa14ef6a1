"""Pipeline orchestration service.

This module provides the high-level run API:
- PipelineOrchestrator.run_all(): drive every enabled matrix entry through
  build -> collect -> publish
- run_pipeline(): wire components from settings and run a pipeline file
- RunReport: per-entry outcomes and the overall exit status

Emulation is provisioned once per run before any entry starts. After that,
entries are failure-isolated: one entry's error is recorded and never
stops its siblings.
"""

from __future__ import annotations

import logging
import shutil
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from crossbuild.builds.artifacts import ArtifactCollector, ArtifactSpec, CollectError
from crossbuild.builds.emulation import EmulationProvisioner, ProvisionBarrier
from crossbuild.builds.runner import BuildError, BuildJob, ContainerBuildRunner
from crossbuild.config import get_settings
from crossbuild.publish.publisher import ArtifactPublisher
from crossbuild.publish.sinks import PublishError, make_sink
from crossbuild.types import BuildErrorKind, EntryStatus, Stage

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from crossbuild.config import Settings
    from crossbuild.pipeline.matrix import PlatformEntry, PlatformMatrix
    from crossbuild.pipeline.schema import PipelineSchema

logger = logging.getLogger(__name__)


@dataclass
class EntryOutcome:
    """Final outcome of one matrix entry.

    Attributes:
        entry: The matrix entry.
        status: succeeded, failed or cancelled.
        stage: Stage the entry finished at.
        error_code: Stable error code when not succeeded.
        message: Human-readable error message.
        exit_code: Container exit code, when known.
        bundle_name: Published bundle name.
        location: Where the sink stored the bundle.
        log_path: Build log location.
        duration: Wall-clock seconds spent on the entry.
    """

    entry: PlatformEntry
    status: EntryStatus
    stage: Stage
    error_code: str | None = None
    message: str | None = None
    exit_code: int | None = None
    bundle_name: str | None = None
    location: str | None = None
    log_path: str | None = None
    duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.entry.platform_tag,
            "arch": self.entry.arch_tag,
            "status": self.status.value,
            "stage": self.stage.value,
            "error_code": self.error_code,
            "message": self.message,
            "exit_code": self.exit_code,
            "bundle_name": self.bundle_name,
            "location": self.location,
            "log_path": self.log_path,
            "duration": round(self.duration, 3),
        }


@dataclass
class RunReport:
    """Aggregated outcomes of a run, in matrix order."""

    outcomes: list[EntryOutcome] = field(default_factory=list)
    run_id: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> list[EntryOutcome]:
        return [o for o in self.outcomes if o.status == EntryStatus.SUCCEEDED]

    @property
    def failed(self) -> list[EntryOutcome]:
        return [o for o in self.outcomes if o.status != EntryStatus.SUCCEEDED]

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> int:
        """0 if every enabled entry succeeded, 1 otherwise."""
        return 0 if self.ok else 1

    def summary_lines(self) -> list[str]:
        """Human-readable one-line-per-entry summary."""
        lines = []
        for o in self.outcomes:
            if o.status == EntryStatus.SUCCEEDED:
                lines.append(f"{o.entry.platform_tag}: succeeded -> {o.bundle_name}")
            else:
                lines.append(
                    f"{o.entry.platform_tag}: {o.status.value} at {o.stage.value}"
                    f" ({o.error_code}): {o.message}"
                )
        return lines

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "exit_code": self.exit_code,
            "summary": {
                "total": len(self.outcomes),
                "succeeded": len(self.succeeded),
                "failed": len(self.failed),
            },
            "entries": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class RunContext:
    """Per-run state shared by all entries.

    Attributes:
        run_id: Unique identifier of the run.
        work_dir: Directory for this run's workspaces, staging and logs.
        cancel_event: Set to cancel the run.
        provision_barrier: Gate ensuring emulation is provisioned once.
    """

    run_id: str
    work_dir: Path
    cancel_event: threading.Event = field(default_factory=threading.Event)
    provision_barrier: ProvisionBarrier = field(default_factory=ProvisionBarrier)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


def new_run_context(
    work_root: Path,
    cancel_event: threading.Event | None = None,
) -> RunContext:
    """Create a context with a fresh run directory under ``work_root``."""
    run_id = f"{datetime.now(timezone.utc):%Y%m%dT%H%M%SZ}_{uuid.uuid4().hex[:8]}"
    return RunContext(
        run_id=run_id,
        work_dir=work_root / run_id,
        cancel_event=cancel_event or threading.Event(),
    )


def _ignore_paths(excluded: Sequence[Path]) -> Callable[[str, list[str]], list[str]]:
    """Build a copytree ignore callback that skips the given directories."""
    resolved = {p.resolve() for p in excluded}

    def ignore(directory: str, names: list[str]) -> list[str]:
        return [n for n in names if (Path(directory) / n).resolve() in resolved]

    return ignore


def prepare_workspace(
    source_root: Path,
    workspace_dir: Path,
    exclude: Sequence[Path] = (),
) -> Path:
    """Copy the source tree into an isolated per-entry workspace.

    Args:
        source_root: Source tree to copy.
        workspace_dir: Destination; replaced if it exists.
        exclude: Directories left out of the copy. The workspace itself is
            always excluded, so a work directory inside the source tree
            is never copied into itself.

    Returns:
        Path to the workspace copy.

    Raises:
        OSError: If copying fails.
    """
    if workspace_dir.exists():
        shutil.rmtree(workspace_dir)
    workspace_dir.parent.mkdir(parents=True, exist_ok=True)
    shutil.copytree(
        source_root,
        workspace_dir,
        symlinks=True,
        ignore=_ignore_paths([workspace_dir, *exclude]),
    )
    return workspace_dir


class PipelineOrchestrator:
    """Drives a platform matrix through provision, build, collect and publish."""

    def __init__(
        self,
        runner: ContainerBuildRunner,
        collector: ArtifactCollector,
        publisher: ArtifactPublisher,
        provisioner: EmulationProvisioner | None = None,
        max_workers: int = 1,
        isolate_workspaces: bool = False,
        workspace_excludes: Sequence[Path] = (),
    ) -> None:
        self.runner = runner
        self.collector = collector
        self.publisher = publisher
        self.provisioner = provisioner
        self.max_workers = max_workers
        self.isolate_workspaces = isolate_workspaces
        self.workspace_excludes = tuple(workspace_excludes)

    def run_all(
        self,
        matrix: PlatformMatrix,
        image: str,
        entrypoint: Path,
        spec: ArtifactSpec,
        source_root: Path,
        context: RunContext,
        env: dict[str, str] | None = None,
    ) -> RunReport:
        """Run every enabled entry of the matrix.

        Args:
            matrix: Platform matrix; disabled entries are never touched.
            image: Build-environment image reference.
            entrypoint: Build script mounted into each container.
            spec: Artifacts expected from each successful build.
            source_root: Source tree to build.
            context: Run context (cancellation, provisioning barrier).
            env: Extra container environment.

        Returns:
            RunReport with one outcome per enabled entry, in matrix order.

        Raises:
            ProvisionError: If emulation cannot be registered. No entry is
                built in that case.
        """
        report = RunReport(run_id=context.run_id, started_at=datetime.now(timezone.utc))
        entries = matrix.entries()
        if not entries:
            logger.info("Matrix has no enabled entries, nothing to build")
            report.finished_at = datetime.now(timezone.utc)
            return report

        self._provision(entries, context)

        workers = max(1, min(self.max_workers, len(entries)))
        # Builds write into the mounted tree; entries never share one
        isolate = self.isolate_workspaces or len(entries) > 1
        logger.info(
            "Run %s: %d entr%s, %d worker(s), isolated workspaces: %s",
            context.run_id,
            len(entries),
            "y" if len(entries) == 1 else "ies",
            workers,
            isolate,
        )

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="crossbuild") as pool:
            futures = [
                pool.submit(
                    self._run_entry,
                    entry,
                    image,
                    entrypoint,
                    spec,
                    source_root,
                    context,
                    env or {},
                    isolate,
                )
                for entry in entries
            ]
            try:
                report.outcomes = [f.result() for f in futures]
            except KeyboardInterrupt:
                logger.warning("Interrupted, cancelling run %s", context.run_id)
                context.cancel_event.set()
                report.outcomes = [f.result() for f in futures]

        report.finished_at = datetime.now(timezone.utc)
        return report

    def _provision(self, entries: Sequence[PlatformEntry], context: RunContext) -> None:
        """Provision emulation once if any enabled entry needs it."""
        if self.provisioner is None:
            return
        foreign = [e for e in entries if self.provisioner.requires_emulation(e.arch_tag)]
        if not foreign:
            logger.debug("No entry requires emulation")
            return
        context.provision_barrier.run(self.provisioner, foreign[0].arch_tag)

    def _run_entry(
        self,
        entry: PlatformEntry,
        image: str,
        entrypoint: Path,
        spec: ArtifactSpec,
        source_root: Path,
        context: RunContext,
        env: dict[str, str],
        isolate: bool,
    ) -> EntryOutcome:
        """Build, collect and publish one entry, recording any failure."""
        started = time.monotonic()

        def outcome(status: EntryStatus, stage: Stage, **kwargs: Any) -> EntryOutcome:
            return EntryOutcome(
                entry=entry,
                status=status,
                stage=stage,
                duration=time.monotonic() - started,
                **kwargs,
            )

        if context.cancelled:
            return outcome(
                EntryStatus.CANCELLED,
                Stage.PREPARE,
                error_code=BuildErrorKind.CANCELLED.value,
                message="Run cancelled before build started",
            )

        entry_dir = context.work_dir / entry.slug
        workspace_root = source_root
        if isolate:
            try:
                workspace_root = prepare_workspace(
                    source_root,
                    entry_dir / "workspace",
                    exclude=[context.work_dir, *self.workspace_excludes],
                )
            except OSError as e:
                logger.error("[%s] Failed to prepare workspace: %s", entry.platform_tag, e)
                return outcome(
                    EntryStatus.FAILED,
                    Stage.PREPARE,
                    error_code="workspace_error",
                    message=str(e),
                )

        job = BuildJob(
            entry=entry,
            source_root=workspace_root,
            build_image=image,
            entrypoint=entrypoint,
            env=env,
        )

        try:
            result = self.runner.run(job, cancel_event=context.cancel_event)
        except BuildError as e:
            status = (
                EntryStatus.CANCELLED
                if e.kind == BuildErrorKind.CANCELLED
                else EntryStatus.FAILED
            )
            return outcome(
                status,
                Stage.BUILD,
                error_code=e.code,
                message=str(e),
                exit_code=e.exit_code,
                log_path=str(e.log_path) if e.log_path else None,
            )

        log_path = str(result.workspace.log_path)
        staging_dir = entry_dir / "staging"
        try:
            if staging_dir.exists():
                shutil.rmtree(staging_dir)

            try:
                bundle = self.collector.collect(result.workspace, spec, entry, staging_dir)
            except CollectError as e:
                job.mark_failed(error_type=e.code, message=str(e))
                return outcome(
                    EntryStatus.FAILED,
                    Stage.COLLECT,
                    error_code=e.code,
                    message=str(e),
                    exit_code=result.exit_code,
                    log_path=log_path,
                )

            if context.cancelled:
                logger.warning(
                    "[%s] Run cancelled, discarding staged bundle", entry.platform_tag
                )
                return outcome(
                    EntryStatus.CANCELLED,
                    Stage.COLLECT,
                    error_code=BuildErrorKind.CANCELLED.value,
                    message="Run cancelled before publish",
                    exit_code=result.exit_code,
                    log_path=log_path,
                )

            try:
                published = self.publisher.publish(bundle)
            except PublishError as e:
                logger.error("[%s] Publish failed: %s", entry.platform_tag, e)
                return outcome(
                    EntryStatus.FAILED,
                    Stage.PUBLISH,
                    error_code=e.code,
                    message=str(e),
                    exit_code=result.exit_code,
                    log_path=log_path,
                )
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)

        # Isolated copies are only kept when something went wrong
        if isolate:
            shutil.rmtree(workspace_root, ignore_errors=True)

        logger.info(
            "[%s] Published %s to %s",
            entry.platform_tag,
            published.bundle_name,
            published.location,
        )
        return outcome(
            EntryStatus.SUCCEEDED,
            Stage.PUBLISH,
            exit_code=result.exit_code,
            bundle_name=published.bundle_name,
            location=published.location,
            log_path=log_path,
        )


def run_pipeline(
    pipeline: PipelineSchema,
    settings: Settings | None = None,
    platforms: Sequence[str] | None = None,
    cancel_event: threading.Event | None = None,
) -> RunReport:
    """Run a loaded pipeline definition with components built from settings.

    Args:
        pipeline: Validated pipeline definition (absolute paths).
        settings: Application settings.
        platforms: Optional subset of enabled platform tags to build.
        cancel_event: Optional event to cancel the run from outside.

    Returns:
        RunReport for the run.

    Raises:
        ProvisionError: If emulation cannot be registered.
        ValueError: If ``platforms`` names an unknown or disabled entry.
    """
    if settings is None:
        settings = get_settings()

    matrix = pipeline.to_matrix()
    if platforms:
        matrix = matrix.select(platforms)

    context = new_run_context(settings.work_dir, cancel_event)
    orchestrator = PipelineOrchestrator(
        runner=ContainerBuildRunner(
            log_dir=context.work_dir / "logs",
            runtime=settings.container_runtime,
            timeout=settings.build_timeout,
        ),
        collector=ArtifactCollector(),
        publisher=ArtifactPublisher(make_sink(settings), pipeline.to_naming_rule()),
        provisioner=EmulationProvisioner(
            runtime=settings.container_runtime,
            binfmt_image=settings.binfmt_image,
            platforms=settings.emulation_platforms,
            mode=settings.emulation_mode,
            timeout=settings.provision_timeout,
        ),
        max_workers=settings.max_concurrent_builds,
        isolate_workspaces=settings.isolate_workspaces,
        workspace_excludes=[settings.work_dir, settings.output_dir],
    )

    logger.info("Starting pipeline %s (run %s)", pipeline.name, context.run_id)
    return orchestrator.run_all(
        matrix,
        image=pipeline.image,
        entrypoint=Path(pipeline.entrypoint),
        spec=pipeline.to_artifact_spec(),
        source_root=Path(pipeline.source_root),
        context=context,
        env=pipeline.env,
    )


__all__ = [
    "EntryOutcome",
    "PipelineOrchestrator",
    "RunContext",
    "RunReport",
    "new_run_context",
    "prepare_workspace",
    "run_pipeline",
]
