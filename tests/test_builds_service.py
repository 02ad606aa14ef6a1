"""Tests for pipeline orchestration."""

import threading
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from crossbuild.builds.artifacts import ArtifactCollector, ArtifactRule, ArtifactSpec
from crossbuild.builds.emulation import ProvisionError
from crossbuild.builds.runner import BuildError, BuildResult
from crossbuild.builds.service import (
    PipelineOrchestrator,
    RunContext,
    RunReport,
    new_run_context,
    prepare_workspace,
    run_pipeline,
)
from crossbuild.config import Settings
from crossbuild.pipeline.io import parse_pipeline_data
from crossbuild.pipeline.matrix import PlatformEntry, PlatformMatrix
from crossbuild.publish.publisher import ArtifactPublisher
from crossbuild.publish.sinks import DirectorySink, PublishError
from crossbuild.types import BuildErrorKind, EntryStatus, Stage, WorkspacePaths

TSUKIMI_SPEC = ArtifactSpec(
    (
        ArtifactRule("target/release/tsukimi"),
        ArtifactRule("target/debian/*.deb"),
        ArtifactRule("i18n/locale"),
        ArtifactRule("resources/moe*.xml"),
    )
)

AMD64 = PlatformEntry("linux/amd64", "x86_64")
ARM64 = PlatformEntry("linux/arm64", "aarch64")


def _write(path: Path, content: bytes = b"data") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)


def tsukimi_outputs(root: Path) -> None:
    _write(root / "target" / "release" / "tsukimi", b"\x7fELF")
    _write(root / "target" / "debian" / "tsukimi_0.9.1_amd64.deb")
    _write(root / "i18n" / "locale" / "ja" / "LC_MESSAGES" / "tsukimi.mo")
    _write(root / "resources" / "moe.tsuna.tsukimi.gschema.xml")


def outputs_without_deb(root: Path) -> None:
    _write(root / "target" / "release" / "tsukimi", b"\x7fELF")
    _write(root / "i18n" / "locale" / "ja" / "LC_MESSAGES" / "tsukimi.mo")
    _write(root / "resources" / "moe.tsuna.tsukimi.gschema.xml")


class FakeRunner:
    """Runner that writes outputs into the workspace instead of running a container."""

    def __init__(
        self,
        produce: Callable[[Path], None] = tsukimi_outputs,
        failures: dict[str, BuildError] | None = None,
        on_run: Callable[[object], None] | None = None,
    ) -> None:
        self.produce = produce
        self.failures = failures or {}
        self.on_run = on_run
        self.jobs: list = []
        self._lock = threading.Lock()

    def run(self, job, cancel_event=None) -> BuildResult:
        with self._lock:
            self.jobs.append(job)
        if job.entry.platform_tag in self.failures:
            raise self.failures[job.entry.platform_tag]
        self.produce(job.source_root)
        if self.on_run is not None:
            self.on_run(job)
        now = datetime.now(timezone.utc)
        return BuildResult(
            workspace=WorkspacePaths(
                root=job.source_root,
                log_path=job.source_root.parent / f"{job.entry.slug}.log",
            ),
            exit_code=0,
            started_at=now,
            finished_at=now,
            command="fake",
            container_name=f"fake-{job.entry.slug}",
        )


class FakeProvisioner:
    """Provisioner for an x86_64 host that records ensure calls."""

    def __init__(self, error: ProvisionError | None = None) -> None:
        self.error = error
        self.ensured: list[str] = []

    def requires_emulation(self, arch_tag: str) -> bool:
        return arch_tag != "x86_64"

    def ensure(self, arch_tag: str) -> None:
        self.ensured.append(arch_tag)
        if self.error is not None:
            raise self.error


class RecordingSink:
    """Sink that records uploads and can fail selected bundles."""

    def __init__(self, fail: set[str] | None = None) -> None:
        self.fail = fail or set()
        self.uploads: list[tuple[str, list[str]]] = []
        self._lock = threading.Lock()

    def upload(self, bundle_name, files):
        if bundle_name in self.fail:
            raise PublishError("HTTP 503", code="http_error", bundle_name=bundle_name)
        with self._lock:
            self.uploads.append((bundle_name, [rel for rel, _ in files]))
        return f"memory://{bundle_name}"


@pytest.fixture
def source_root(tmp_path: Path) -> Path:
    root = tmp_path / "src"
    _write(root / "Cargo.toml", b"[package]\nname = 'tsukimi'\n")
    return root


@pytest.fixture
def context(tmp_path: Path) -> RunContext:
    return RunContext(run_id="test-run", work_dir=tmp_path / "work")


def _run(
    matrix: PlatformMatrix,
    runner: FakeRunner,
    source_root: Path,
    context: RunContext,
    sink=None,
    provisioner=None,
    spec: ArtifactSpec = TSUKIMI_SPEC,
    **kwargs,
) -> RunReport:
    orchestrator = PipelineOrchestrator(
        runner=runner,
        collector=ArtifactCollector(),
        publisher=ArtifactPublisher(sink if sink is not None else RecordingSink()),
        provisioner=provisioner,
        **kwargs,
    )
    return orchestrator.run_all(
        matrix,
        image="ghcr.io/kosette/ubuntu-rust-gtk4:latest",
        entrypoint=source_root.parent / "entrypoint.sh",
        spec=spec,
        source_root=source_root,
        context=context,
    )


class TestRunAll:
    """Test PipelineOrchestrator.run_all."""

    def test_single_native_entry(
        self, tmp_path: Path, source_root: Path, context: RunContext
    ) -> None:
        """A successful native build is collected and published as x86_64-linux."""
        sink = DirectorySink(tmp_path / "out")
        report = _run(PlatformMatrix([AMD64]), FakeRunner(), source_root, context, sink=sink)

        assert report.exit_code == 0
        outcome = report.outcomes[0]
        assert outcome.status == EntryStatus.SUCCEEDED
        assert outcome.stage == Stage.PUBLISH
        assert outcome.bundle_name == "x86_64-linux"
        bundle_dir = tmp_path / "out" / "x86_64-linux"
        assert (bundle_dir / "tsukimi").read_bytes() == b"\x7fELF"
        assert (bundle_dir / "tsukimi_0.9.1_amd64.deb").exists()
        assert (bundle_dir / "locale" / "ja" / "LC_MESSAGES" / "tsukimi.mo").exists()
        assert (bundle_dir / "crossbuild-manifest.json").exists()

    def test_missing_artifact_not_published(
        self, source_root: Path, context: RunContext
    ) -> None:
        """A build without its .deb fails at collect and publishes nothing."""
        sink = RecordingSink()
        report = _run(
            PlatformMatrix([AMD64]),
            FakeRunner(produce=outputs_without_deb),
            source_root,
            context,
            sink=sink,
        )

        outcome = report.outcomes[0]
        assert outcome.status == EntryStatus.FAILED
        assert outcome.stage == Stage.COLLECT
        assert outcome.error_code == "missing_artifact"
        assert outcome.exit_code == 0
        assert sink.uploads == []
        assert report.exit_code == 1

    def test_failure_isolated_between_entries(
        self, source_root: Path, context: RunContext
    ) -> None:
        """One failed entry does not stop its sibling from publishing."""
        sink = RecordingSink()
        runner = FakeRunner(
            failures={
                "linux/arm64": BuildError(
                    "Build failed with exit code 101",
                    kind=BuildErrorKind.BUILD_FAILED,
                    exit_code=101,
                )
            }
        )
        report = _run(
            PlatformMatrix([ARM64, AMD64]),
            runner,
            source_root,
            context,
            sink=sink,
            provisioner=FakeProvisioner(),
        )

        assert [o.entry.platform_tag for o in report.outcomes] == [
            "linux/arm64",
            "linux/amd64",
        ]
        failed, succeeded = report.outcomes
        assert failed.status == EntryStatus.FAILED
        assert failed.stage == Stage.BUILD
        assert failed.error_code == "build_failed"
        assert failed.exit_code == 101
        assert succeeded.status == EntryStatus.SUCCEEDED
        assert [name for name, _ in sink.uploads] == ["x86_64-linux"]
        assert report.exit_code == 1

    def test_disabled_entries_untouched(self, source_root: Path, context: RunContext) -> None:
        """Disabled entries are never provisioned, built or published."""
        runner = FakeRunner()
        provisioner = FakeProvisioner()
        sink = RecordingSink()
        matrix = PlatformMatrix([AMD64, PlatformEntry("linux/arm64", "aarch64", enabled=False)])

        report = _run(matrix, runner, source_root, context, sink=sink, provisioner=provisioner)

        assert [j.entry.platform_tag for j in runner.jobs] == ["linux/amd64"]
        assert provisioner.ensured == []
        assert [o.entry.platform_tag for o in report.outcomes] == ["linux/amd64"]
        assert [name for name, _ in sink.uploads] == ["x86_64-linux"]

    def test_provisioning_runs_once(self, source_root: Path, context: RunContext) -> None:
        """Several foreign entries share a single provisioning call."""
        provisioner = FakeProvisioner()
        matrix = PlatformMatrix(
            [
                ARM64,
                PlatformEntry("linux/arm/v7", "armv7l"),
                PlatformEntry("linux/riscv64", "riscv64"),
            ]
        )

        report = _run(
            matrix,
            FakeRunner(),
            source_root,
            context,
            provisioner=provisioner,
            max_workers=3,
        )

        assert provisioner.ensured == ["aarch64"]
        assert context.provision_barrier.calls == 1
        assert len(report.succeeded) == 3

    def test_provision_failure_builds_nothing(
        self, source_root: Path, context: RunContext
    ) -> None:
        """Provisioning failure is fatal before any entry starts."""
        runner = FakeRunner()
        provisioner = FakeProvisioner(
            error=ProvisionError("binfmt failed", exit_code=1, code="provision_failed")
        )

        with pytest.raises(ProvisionError):
            _run(
                PlatformMatrix([AMD64, ARM64]),
                runner,
                source_root,
                context,
                provisioner=provisioner,
            )

        assert runner.jobs == []

    def test_native_only_skips_provisioning(
        self, source_root: Path, context: RunContext
    ) -> None:
        """Native-only matrices never provision."""
        provisioner = FakeProvisioner()
        _run(PlatformMatrix([AMD64]), FakeRunner(), source_root, context, provisioner=provisioner)
        assert provisioner.ensured == []
        assert not context.provision_barrier.done

    def test_empty_matrix(self, source_root: Path, context: RunContext) -> None:
        """An empty matrix is a successful no-op."""
        runner = FakeRunner()
        provisioner = FakeProvisioner()
        report = _run(PlatformMatrix(), runner, source_root, context, provisioner=provisioner)

        assert report.outcomes == []
        assert report.exit_code == 0
        assert runner.jobs == []
        assert provisioner.ensured == []

    def test_cancelled_before_start(self, source_root: Path, context: RunContext) -> None:
        """A run cancelled up front builds and publishes nothing."""
        runner = FakeRunner()
        sink = RecordingSink()
        context.cancel_event.set()

        report = _run(PlatformMatrix([AMD64, ARM64]), runner, source_root, context, sink=sink)

        assert [o.status for o in report.outcomes] == [
            EntryStatus.CANCELLED,
            EntryStatus.CANCELLED,
        ]
        assert all(o.stage == Stage.PREPARE for o in report.outcomes)
        assert runner.jobs == []
        assert sink.uploads == []
        assert report.exit_code == 1

    def test_cancelled_during_build_not_published(
        self, source_root: Path, context: RunContext
    ) -> None:
        """Cancelling after a build finishes discards its staged bundle."""
        runner = FakeRunner(on_run=lambda job: context.cancel_event.set())
        sink = RecordingSink()

        report = _run(PlatformMatrix([AMD64, ARM64]), runner, source_root, context, sink=sink)

        first, second = report.outcomes
        assert first.status == EntryStatus.CANCELLED
        assert first.stage == Stage.COLLECT
        assert second.status == EntryStatus.CANCELLED
        assert second.stage == Stage.PREPARE
        assert len(runner.jobs) == 1
        assert sink.uploads == []
        assert not (context.work_dir / "linux-amd64" / "staging").exists()

    def test_publish_failure(self, source_root: Path, context: RunContext) -> None:
        """Sink errors fail only the affected entry."""
        sink = RecordingSink(fail={"aarch64-linux"})
        report = _run(
            PlatformMatrix([AMD64, ARM64]), FakeRunner(), source_root, context, sink=sink
        )

        ok, failed = report.outcomes
        assert ok.status == EntryStatus.SUCCEEDED
        assert failed.status == EntryStatus.FAILED
        assert failed.stage == Stage.PUBLISH
        assert failed.error_code == "http_error"
        assert [name for name, _ in sink.uploads] == ["x86_64-linux"]

    def test_staging_removed(self, source_root: Path, context: RunContext) -> None:
        """Staging directories are cleaned up after publish."""
        _run(PlatformMatrix([AMD64]), FakeRunner(), source_root, context)
        assert not (context.work_dir / "linux-amd64" / "staging").exists()

    def test_bundle_names_stable_across_runs(self, tmp_path: Path, source_root: Path) -> None:
        """Re-running publishes under the same name and replaces the bundle."""
        sink = DirectorySink(tmp_path / "out")
        for run_id in ("run-1", "run-2"):
            context = RunContext(run_id=run_id, work_dir=tmp_path / "work" / run_id)
            report = _run(PlatformMatrix([AMD64]), FakeRunner(), source_root, context, sink=sink)
            assert report.outcomes[0].bundle_name == "x86_64-linux"

        assert [p.name for p in (tmp_path / "out").iterdir()] == ["x86_64-linux"]

    def test_parallel_runs_use_isolated_workspaces(
        self, source_root: Path, context: RunContext
    ) -> None:
        """Concurrent entries each build in their own copy of the source tree."""
        runner = FakeRunner()
        report = _run(
            PlatformMatrix([AMD64, ARM64]),
            runner,
            source_root,
            context,
            provisioner=FakeProvisioner(),
            max_workers=2,
        )

        roots = {j.entry.platform_tag: j.source_root for j in runner.jobs}
        assert roots["linux/amd64"] == context.work_dir / "linux-amd64" / "workspace"
        assert roots["linux/arm64"] == context.work_dir / "linux-arm64" / "workspace"
        assert not (source_root / "target").exists()
        assert not roots["linux/amd64"].exists()
        assert report.exit_code == 0

    def test_isolated_workspace_kept_on_failure(
        self, source_root: Path, context: RunContext
    ) -> None:
        """Failed entries keep their workspace for diagnostics."""
        runner = FakeRunner(produce=outputs_without_deb)
        _run(
            PlatformMatrix([AMD64]),
            runner,
            source_root,
            context,
            isolate_workspaces=True,
        )
        workspace = context.work_dir / "linux-amd64" / "workspace"
        assert (workspace / "Cargo.toml").exists()
        assert (workspace / "target" / "release" / "tsukimi").exists()

    def test_sequential_entries_build_in_fresh_workspaces(
        self, source_root: Path, context: RunContext
    ) -> None:
        """A later entry cannot pass collection with an earlier entry's outputs."""
        roots: list[Path] = []

        def first_build_only(root: Path) -> None:
            if not roots:
                tsukimi_outputs(root)
            roots.append(root)

        sink = RecordingSink()
        report = _run(
            PlatformMatrix([AMD64, ARM64]),
            FakeRunner(produce=first_build_only),
            source_root,
            context,
            sink=sink,
            provisioner=FakeProvisioner(),
        )

        first, second = report.outcomes
        assert first.status == EntryStatus.SUCCEEDED
        assert second.status == EntryStatus.FAILED
        assert second.stage == Stage.COLLECT
        assert second.error_code == "missing_artifact"
        assert [name for name, _ in sink.uploads] == ["x86_64-linux"]
        assert roots[0] != roots[1]
        assert not (source_root / "target").exists()
        assert report.exit_code == 1

    def test_work_dir_inside_source_tree_not_copied(self, tmp_path: Path) -> None:
        """Workspace copies leave out the run and output directories."""
        source_root = tmp_path / "src"
        _write(source_root / "Cargo.toml")
        _write(source_root / "dist" / "old-bundle" / "tsukimi")
        context = RunContext(run_id="test-run", work_dir=source_root / ".crossbuild")
        listings: list[list[str]] = []
        runner = FakeRunner(
            on_run=lambda job: listings.append(
                sorted(p.name for p in job.source_root.iterdir())
            )
        )

        report = _run(
            PlatformMatrix([AMD64, ARM64]),
            runner,
            source_root,
            context,
            provisioner=FakeProvisioner(),
            workspace_excludes=[source_root / "dist"],
        )

        assert report.exit_code == 0
        assert len(listings) == 2
        for names in listings:
            assert ".crossbuild" not in names
            assert "dist" not in names
            assert "Cargo.toml" in names


class TestRunReport:
    """Test RunReport aggregation."""

    def test_summary_and_dict(self, source_root: Path, context: RunContext) -> None:
        """Summary lines and dict output describe every outcome."""
        report = _run(
            PlatformMatrix([AMD64]),
            FakeRunner(produce=outputs_without_deb),
            source_root,
            context,
        )

        line = report.summary_lines()[0]
        assert line.startswith("linux/amd64: failed at collect (missing_artifact)")
        data = report.to_dict()
        assert data["run_id"] == "test-run"
        assert data["exit_code"] == 1
        assert data["summary"] == {"total": 1, "succeeded": 0, "failed": 1}
        assert data["entries"][0]["error_code"] == "missing_artifact"

    def test_empty_report_ok(self) -> None:
        """A report with no outcomes is ok."""
        assert RunReport().ok


class TestHelpers:
    """Test context and workspace helpers."""

    def test_new_run_context(self, tmp_path: Path) -> None:
        """Each context gets its own directory under the work root."""
        first = new_run_context(tmp_path)
        second = new_run_context(tmp_path)
        assert first.run_id != second.run_id
        assert first.work_dir == tmp_path / first.run_id
        assert not first.cancelled

    def test_prepare_workspace_replaces(self, tmp_path: Path, source_root: Path) -> None:
        """Preparing a workspace twice starts from a clean copy."""
        dest = tmp_path / "ws"
        prepare_workspace(source_root, dest)
        _write(dest / "leftover")
        prepare_workspace(source_root, dest)
        assert (dest / "Cargo.toml").exists()
        assert not (dest / "leftover").exists()

    def test_prepare_workspace_skips_nested_destination(
        self, tmp_path: Path, source_root: Path
    ) -> None:
        """A workspace placed inside the source tree is not copied into itself."""
        dest = source_root / ".crossbuild" / "run" / "linux-amd64" / "workspace"
        prepare_workspace(source_root, dest)

        assert (dest / "Cargo.toml").exists()
        assert not (dest / ".crossbuild" / "run" / "linux-amd64" / "workspace").exists()

    def test_prepare_workspace_exclude(self, tmp_path: Path, source_root: Path) -> None:
        """Excluded directories are left out of the copy."""
        _write(source_root / "out" / "bundle.tar.gz")
        dest = tmp_path / "ws"
        prepare_workspace(source_root, dest, exclude=[source_root / "out"])

        assert (dest / "Cargo.toml").exists()
        assert not (dest / "out").exists()


class TestRunPipeline:
    """Test run_pipeline wiring."""

    def _pipeline(self, tmp_path: Path):
        return parse_pipeline_data(
            {
                "name": "tsukimi",
                "image": "ghcr.io/kosette/ubuntu-rust-gtk4:latest",
                "entrypoint": "entrypoint.sh",
                "source_root": "src",
                "matrix": [
                    {"platform": "amd64", "arch": "x86_64"},
                    {"platform": "arm64", "arch": "aarch64", "enabled": False},
                ],
                "artifacts": [{"source": "target/release/tsukimi"}],
                "naming": {"prefix": "tsukimi"},
            },
            base_dir=tmp_path,
        )

    def test_run_pipeline_publishes_to_output_dir(self, tmp_path: Path) -> None:
        """run_pipeline wires settings into a directory sink."""
        settings = Settings(
            work_dir=tmp_path / "work",
            output_dir=tmp_path / "out",
            emulation_mode="never",
        )
        fake = FakeRunner()

        with patch("crossbuild.builds.service.ContainerBuildRunner", return_value=fake):
            report = run_pipeline(self._pipeline(tmp_path), settings=settings)

        assert report.exit_code == 0
        assert report.outcomes[0].bundle_name == "tsukimi-x86_64-linux"
        assert (tmp_path / "out" / "tsukimi-x86_64-linux" / "tsukimi").exists()
        assert fake.jobs[0].source_root == (tmp_path / "src").resolve()

    def test_run_pipeline_rejects_disabled_selection(self, tmp_path: Path) -> None:
        """Selecting a disabled platform is an error."""
        settings = Settings(work_dir=tmp_path / "work", output_dir=tmp_path / "out")
        with pytest.raises(ValueError, match="linux/arm64"):
            run_pipeline(self._pipeline(tmp_path), settings=settings, platforms=["arm64"])
