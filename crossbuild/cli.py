"""Thin CLI wrapper for crossbuild.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markup import escape

from crossbuild import __version__
from crossbuild.config import Settings, get_settings, print_settings_json

app = typer.Typer(
    name="crossbuild",
    help="crossbuild - multi-architecture containerized builds and artifact bundles",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"crossbuild version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Configure root logging for CLI runs."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """crossbuild - multi-architecture containerized builds and artifact bundles."""


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
        return

    timeout_display = (
        str(settings.build_timeout) if settings.build_timeout else "(unlimited)"
    )
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Work directory:      {settings.work_dir}")
    console.print(f"  Output directory:    {settings.output_dir}")
    console.print(f"  Publish URL:         {settings.publish_url or '(directory sink)'}")
    console.print()
    console.print("[bold]Runtime:[/bold]")
    console.print(f"  Container runtime:   {settings.container_runtime}")
    console.print(f"  Binfmt image:        {settings.binfmt_image}")
    console.print(f"  Emulation mode:      {settings.emulation_mode}")
    console.print(f"  Emulation platforms: {settings.emulation_platforms}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Concurrency:[/bold]")
    console.print(f"  Max builds:          {settings.max_concurrent_builds}")
    console.print(f"  Isolate workspaces:  {settings.isolate_workspaces}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Build timeout:       {timeout_display}")
    console.print(f"  Provision timeout:   {settings.provision_timeout}")
    console.print(f"  Publish timeout:     {settings.publish_timeout}")


def _load_or_exit(path: str):
    """Load a pipeline file or exit with an error message."""
    from crossbuild.pipeline.io import PipelineLoadError, load_pipeline

    try:
        return load_pipeline(Path(path))
    except PipelineLoadError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None


@app.command()
def validate(
    path: Annotated[str, typer.Argument(help="Path to pipeline file")],
    show: Annotated[
        bool,
        typer.Option("--show", help="Print the normalized definition"),
    ] = False,
) -> None:
    """Validate a pipeline file without running it."""
    pipeline = _load_or_exit(path)
    matrix = pipeline.to_matrix()

    console.print(f"[green]✓ Valid pipeline: {pipeline.name}[/green]")
    console.print(f"  Image: {pipeline.image}")
    console.print(
        f"  Platforms: {len(matrix.entries())} enabled, {len(matrix.declared())} declared"
    )
    console.print(f"  Artifacts: {len(pipeline.artifacts)} rule(s)")
    if show:
        from crossbuild.pipeline.io import dump_pipeline_yaml

        console.print()
        console.print(dump_pipeline_yaml(pipeline))


@app.command()
def matrix(
    path: Annotated[str, typer.Argument(help="Path to pipeline file")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List the platform matrix of a pipeline, including disabled entries."""
    from crossbuild.publish.naming import compute_bundle_name

    pipeline = _load_or_exit(path)
    platform_matrix = pipeline.to_matrix()
    rule = pipeline.to_naming_rule()

    rows = []
    for entry in platform_matrix.declared():
        try:
            bundle_name = compute_bundle_name(entry, rule)
        except ValueError as e:
            bundle_name = f"<invalid: {e}>"
        rows.append(
            {
                "platform": entry.platform_tag,
                "arch": entry.arch_tag,
                "enabled": entry.enabled,
                "bundle_name": bundle_name,
            }
        )

    if json_output:
        typer.echo(json.dumps(rows, indent=2))
        return

    if not rows:
        console.print("[yellow]Matrix is empty[/yellow]")
        return

    console.print(f"[bold]Matrix for {pipeline.name}:[/bold]")
    console.print()
    for row in rows:
        color = "green" if row["enabled"] else "dim"
        state = "enabled" if row["enabled"] else "disabled"
        console.print(f"  [{color}]{row['platform']}[/{color}] ({row['arch']}) - {state}")
        console.print(f"    Bundle: {row['bundle_name']}")


@app.command()
def run(
    path: Annotated[str, typer.Argument(help="Path to pipeline file")],
    platforms: Annotated[
        list[str] | None,
        typer.Option("--platform", "-p", help="Only build this platform (can be repeated)"),
    ] = None,
    jobs: Annotated[
        int | None,
        typer.Option("--jobs", "-j", help="Maximum concurrent builds"),
    ] = None,
    timeout: Annotated[
        int | None,
        typer.Option("--timeout", help="Per-build timeout in seconds"),
    ] = None,
    output_dir: Annotated[
        str | None,
        typer.Option("--output-dir", "-o", help="Directory sink for bundles"),
    ] = None,
    publish_url: Annotated[
        str | None,
        typer.Option("--publish-url", help="HTTP endpoint for bundle uploads"),
    ] = None,
    emulation: Annotated[
        str | None,
        typer.Option("--emulation", help="Emulation mode: auto, always or never"),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Logging level"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output the run report as JSON"),
    ] = False,
) -> None:
    """Build, collect and publish every enabled platform of a pipeline.

    Exits 0 only if every selected platform built, collected and published.
    """
    from pydantic import ValidationError

    from crossbuild.builds.emulation import ProvisionError
    from crossbuild.builds.service import run_pipeline

    pipeline = _load_or_exit(path)

    overrides: dict[str, object] = {}
    if jobs is not None:
        overrides["max_concurrent_builds"] = jobs
    if timeout is not None:
        overrides["build_timeout"] = timeout
    if output_dir is not None:
        overrides["output_dir"] = Path(output_dir)
    if publish_url is not None:
        overrides["publish_url"] = publish_url
    if emulation is not None:
        overrides["emulation_mode"] = emulation
    if log_level is not None:
        overrides["log_level"] = log_level.upper()

    try:
        settings = Settings(**{**get_settings().model_dump(), **overrides})
    except ValidationError as e:
        console.print("[red]Invalid options:[/red]")
        console.print(escape(str(e)))
        raise typer.Exit(code=1) from None

    configure_logging(settings.log_level)

    try:
        report = run_pipeline(pipeline, settings=settings, platforms=platforms)
    except ProvisionError as e:
        console.print(
            f"[red]Emulation setup failed, no platform was built: {escape(str(e))}[/red]"
        )
        raise typer.Exit(code=1) from None
    except ValueError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        typer.echo(json.dumps(report.to_dict(), indent=2))
    else:
        if not report.outcomes:
            console.print("[yellow]No enabled platforms to build[/yellow]")
        else:
            console.print(f"[bold]Run {report.run_id}:[/bold]")
            for outcome, line in zip(report.outcomes, report.summary_lines()):
                color = "green" if outcome.status.value == "succeeded" else "red"
                console.print(f"  [{color}]{escape(line)}[/{color}]")
                if outcome.status.value != "succeeded" and outcome.log_path:
                    console.print(f"    Log: {outcome.log_path}")
            console.print()
            console.print(
                f"[bold]{len(report.succeeded)} succeeded, {len(report.failed)} failed[/bold]"
            )

    raise typer.Exit(code=report.exit_code)


if __name__ == "__main__":
    app()
