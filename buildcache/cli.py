"""Thin CLI wrapper for buildcache.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
import os
from dataclasses import asdict
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from buildcache import __version__
from buildcache.config import Settings, get_settings, print_settings_json

app = typer.Typer(
    name="buildcache",
    help="Build Nix targets, push their closures to a binary cache, and publish images",
    no_args_is_help=True,
)
build_and_cache_app = typer.Typer(
    name="build-and-cache",
    help="Build a target and push its closure to the binary cache if $ATTIC_TOKEN is set",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)

_FORWARD_OPTIONS = {"allow_extra_args": True, "ignore_unknown_options": True}


def configure_logging(level: str) -> None:
    """Route log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"buildcache version {__version__}")
        raise typer.Exit()


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
    """Build Nix targets, push their closures to a binary cache, and publish images."""
    configure_logging(get_settings().log_level)


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
        console.print(
            print_settings_json(settings), soft_wrap=True, markup=False, highlight=False
        )
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Binary cache:[/bold]")
    console.print(f"  Endpoint:            {settings.cache_endpoint}")
    console.print(f"  Token variable:      ${settings.cache_token_env}")
    console.print(f"  Publisher tool:      {settings.publisher_tool_ref}")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Artifacts directory: {settings.artifacts_dir}")
    console.print(f"  Log directory:       {settings.log_dir}")
    console.print(f"  Registries file:     {settings.registries_file or '(defaults)'}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Images:[/bold]")
    console.print(f"  Architectures:       {', '.join(settings.architectures)}")
    console.print(f"  Publish branches:    {', '.join(settings.publish_branches)}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Build timeout:       {settings.build_timeout}")
    console.print(f"  Query timeout:       {settings.query_timeout}")
    console.print(f"  Network timeout:     {settings.network_timeout}")
    console.print(f"  Push timeout:        {settings.push_timeout}")
    console.print()
    console.print("[bold]Retries:[/bold]")
    console.print(f"  Max attempts:        {settings.max_attempts}")
    console.print(f"  Backoff:             {settings.backoff_base}s .. {settings.backoff_cap}s")


def run_build_and_cache(
    target: str,
    build_options: list[str],
    stage: str | None,
    json_output: bool,
    settings: Settings | None = None,
) -> int:
    """Run the build orchestrator and report its outcome.

    Returns:
        Process exit code.
    """
    from buildcache.cache.credentials import load_credential
    from buildcache.cache.publisher import CachePublisher
    from buildcache.cancellation import CancellationToken, install_signal_handlers
    from buildcache.nix.closure import ClosureResolver
    from buildcache.orchestrator import BuildOrchestrator, StageRequest
    from buildcache.retry import RetryPolicy

    settings = settings or get_settings()

    stage_request = None
    if stage:
        try:
            stage_request = StageRequest.parse(stage)
        except ValueError as e:
            console.print(f"[red]Invalid --stage value: {e}[/red]")
            return 2

    token = CancellationToken()
    install_signal_handlers(token)

    credential = load_credential(settings.cache_endpoint, settings.cache_token_env)
    if credential is None and not json_output:
        console.print(
            f"[yellow]${settings.cache_token_env} is unset, "
            "skipping uploading to the binary cache[/yellow]"
        )

    resolver = ClosureResolver.from_settings(settings, cancel_token=token)
    publisher = None
    if credential is not None:
        publisher = CachePublisher(
            store=resolver,
            timeout=settings.network_timeout,
            retry_policy=RetryPolicy.from_settings(settings),
            cancel_token=token,
        )

    orchestrator = BuildOrchestrator(
        resolver=resolver,
        publisher=publisher,
        credential=credential,
        tool_ref=settings.publisher_tool_ref or None,
        tool_build_options=("--inputs-from", settings.inputs_from),
        artifacts_dir=settings.artifacts_dir,
        artifact_name=settings.artifact_name,
        cancel_token=token,
    )
    try:
        result = orchestrator.run(target, build_options, stage=stage_request)
    finally:
        if publisher is not None:
            publisher.close()

    summary = result.to_operation_result()
    if json_output:
        console.print(
            json.dumps(asdict(summary), indent=2, default=str),
            soft_wrap=True,
            markup=False,
            highlight=False,
        )
    elif summary.success:
        console.print(f"[green]✓ {summary.message}[/green]")
    else:
        console.print(f"[red]✗ {summary.message}[/red]")
        if summary.log_path:
            console.print(f"  Log: {summary.log_path}")
    return result.exit_code


@build_and_cache_app.command(context_settings=_FORWARD_OPTIONS)
def build_and_cache(
    target: Annotated[str, typer.Argument(help="Flake installable to build")],
    build_options: Annotated[
        list[str] | None,
        typer.Argument(help="Options forwarded to nix build"),
    ] = None,
    stage: Annotated[
        str | None,
        typer.Option(
            "--stage",
            help="Copy the output to its hand-off name, as <kind>:<arch>",
        ),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build TARGET and push its closure to the binary cache if a token is set."""
    settings = get_settings()
    configure_logging(settings.log_level)
    code = run_build_and_cache(
        target, list(build_options or []), stage, json_output, settings
    )
    raise typer.Exit(code=code)


@app.command("build", context_settings=_FORWARD_OPTIONS)
def build(
    target: Annotated[str, typer.Argument(help="Flake installable to build")],
    build_options: Annotated[
        list[str] | None,
        typer.Argument(help="Options forwarded to nix build"),
    ] = None,
    stage: Annotated[
        str | None,
        typer.Option(
            "--stage",
            help="Copy the output to its hand-off name, as <kind>:<arch>",
        ),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build TARGET and push its closure to the binary cache if a token is set."""
    code = run_build_and_cache(target, list(build_options or []), stage, json_output)
    raise typer.Exit(code=code)


images_app = typer.Typer(help="Publish multi-architecture container images")
app.add_typer(images_app, name="images")


@images_app.command("publish")
def images_publish(
    artifacts_dir: Annotated[
        Path | None,
        typer.Option("--artifacts-dir", "-a", help="Directory holding image archives"),
    ] = None,
    registries_file: Annotated[
        Path | None,
        typer.Option("--registries-file", help="YAML file listing registries"),
    ] = None,
    registry_names: Annotated[
        list[str] | None,
        typer.Option("--registry", "-r", help="Only publish to this registry (repeatable)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Push per-architecture images and manifest lists to each registry."""
    from buildcache.artifacts import collect_bundles
    from buildcache.cancellation import (
        CancellationToken,
        Cancelled,
        install_signal_handlers,
    )
    from buildcache.images.engine import DockerEngine, LoadError
    from buildcache.images.models import ManifestError, TriggerContext
    from buildcache.images.registries import RegistryConfigError, load_registries
    from buildcache.images.service import ImagePublisher
    from buildcache.orchestrator import EXIT_CANCELLED
    from buildcache.retry import RetryPolicy
    from buildcache.types import Architecture, ArtifactKind, RegistryStatus

    settings = get_settings()

    try:
        architectures = [Architecture(a) for a in settings.architectures]
        trigger = TriggerContext.from_env()
        registries = load_registries(registries_file or settings.registries_file)
    except (ValueError, RegistryConfigError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None

    if registry_names:
        unknown = sorted(set(registry_names) - {r.name for r in registries})
        if unknown:
            console.print(f"[red]Unknown registry: {', '.join(unknown)}[/red]")
            raise typer.Exit(code=1)
        registries = [r for r in registries if r.name in registry_names]

    bundles = collect_bundles(
        artifacts_dir or settings.artifacts_dir,
        ArtifactKind.CONTAINER_IMAGE,
        architectures,
        settings.artifact_name,
    )

    token = CancellationToken()
    install_signal_handlers(token)
    publisher = ImagePublisher(
        engine=DockerEngine(settings.docker_bin, timeout=settings.push_timeout),
        registries=registries,
        architectures=architectures,
        publish_branches=settings.publish_branches,
        environ=os.environ,
        retry_policy=RetryPolicy.from_settings(settings),
        cancel_token=token,
    )

    try:
        report = publisher.publish(bundles, trigger)
    except (LoadError, ManifestError) as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1) from None
    except Cancelled as e:
        console.print(f"[yellow]{e}[/yellow]")
        raise typer.Exit(code=EXIT_CANCELLED) from None

    if json_output:
        output = {
            "success": report.success,
            "skipped_reason": report.skipped_reason,
            "tags": {k.value: v for k, v in report.tags.items()},
            "registries": [
                {**asdict(r), "status": r.status.value} for r in report.registries
            ],
        }
        console.print(
            json.dumps(output, indent=2), soft_wrap=True, markup=False, highlight=False
        )
    elif report.skipped_reason:
        console.print(f"[yellow]Skipped: {report.skipped_reason}[/yellow]")
    else:
        console.print("[bold]Image publish results:[/bold]")
        for r in report.registries:
            if r.status == RegistryStatus.SUCCEEDED:
                console.print(f"  [green]✓ {r.name}[/green]")
                for ref in r.pushed_manifests:
                    console.print(f"      {ref}")
            else:
                console.print(f"  [red]✗ {r.name}[/red]")
                if r.error:
                    console.print(f"      Error: {r.error}")

    if not report.success:
        raise typer.Exit(code=1)


@app.command()
def plan(
    check: Annotated[
        str | None,
        typer.Option("--check", "-c", help="Verify upstream artifacts of this job exist"),
    ] = None,
    artifacts_dir: Annotated[
        Path | None,
        typer.Option("--artifacts-dir", "-a", help="Directory holding hand-off artifacts"),
    ] = None,
) -> None:
    """Show the pipeline jobs, or check a job's upstream artifacts."""
    from buildcache.pipeline import BarrierError, PlanError, default_plan

    settings = get_settings()
    pipeline = default_plan()

    if check:
        try:
            handles = pipeline.check_barrier(
                check, artifacts_dir or settings.artifacts_dir, settings.artifact_name
            )
        except (BarrierError, PlanError) as e:
            console.print(f"[red]✗ {e}[/red]")
            raise typer.Exit(code=1) from None
        console.print(f"[green]✓ {check}: {len(handles)} upstream artifact(s) present[/green]")
        return

    table = Table(title="Pipeline")
    table.add_column("Stage")
    table.add_column("Job")
    table.add_column("Target")
    table.add_column("Produces")
    table.add_column("Needs")
    for job in pipeline.order():
        produces = (
            f"{job.produces[0].value}:{job.produces[1].value}" if job.produces else ""
        )
        table.add_row(
            job.stage, job.name, job.target or "", produces, ", ".join(job.needs)
        )
    console.print(table)


if __name__ == "__main__":
    app()
