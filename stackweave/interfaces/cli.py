"""Command line interface for resolving and inspecting deployments."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import structlog
from rich.console import Console
from rich.table import Table

from stackweave.application.enablement import ConflictPolicy
from stackweave.application.engine import (
    ResolutionEngine,
    ResolutionResult,
    build_engine_from_config,
)
from stackweave.core import config
from stackweave.core.deployment import load_deployment
from stackweave.domain.errors import StackweaveError
from stackweave.infrastructure.planning import (
    detect_plan_drift,
    load_snapshot,
    result_to_mapping,
    write_snapshot,
)

_FORMAT_OPTION = click.option(
    "--format", "output_format", type=click.Choice(["text", "json"]), default="text"
)
_DEPLOYMENT_ARGUMENT = click.argument(
    "deployment", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)


def _engine(ctx: click.Context) -> ResolutionEngine:
    options = ctx.find_object(dict) or {}
    settings = config.ENGINE
    if options.get("policy"):
        settings = config.EngineSettings(
            catalog_path=settings.catalog_path,
            conflict_policy=options["policy"],
            ledger_path=settings.ledger_path,
            log_level=settings.log_level,
        )
    try:
        return build_engine_from_config(settings, catalog_path=options.get("catalog"))
    except StackweaveError as exc:
        raise click.ClickException(str(exc)) from exc


def _resolve(ctx: click.Context, path: Path) -> ResolutionResult:
    engine = _engine(ctx)
    try:
        return engine.resolve(load_deployment(path))
    except StackweaveError as exc:
        raise click.ClickException(str(exc)) from exc


def _display(value: Any) -> str:
    if value is None:
        return "[dim]null[/dim]"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


@click.group(help="Resolve declarative infrastructure deployments.")
@click.option(
    "--catalog",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Template catalog to load instead of the configured one.",
)
@click.option(
    "--policy",
    type=click.Choice([policy.value for policy in ConflictPolicy]),
    default=None,
    help="How to treat explicitly enabled instances with disabled hard dependencies.",
)
@click.option("--verbose", "-v", is_flag=True, help="Log resolution diagnostics.")
@click.pass_context
def cli(
    ctx: click.Context, catalog: Path | None, policy: str | None, verbose: bool
) -> None:
    """Entry point for deployment resolution commands."""

    ctx.ensure_object(dict)
    ctx.obj.update({"catalog": catalog, "policy": policy})
    _configure_logging(logging.DEBUG if verbose else config.ENGINE.log_level)


def _configure_logging(level: int | str) -> None:
    """Send stdlib and structlog events to stderr; stdout carries command output."""

    logging.basicConfig(
        level=level,
        format="%(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.KeyValueRenderer(key_order=["event"]),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


@cli.command("templates")
@click.pass_context
def templates(ctx: click.Context) -> None:
    """List the component templates in the catalog."""

    engine = _engine(ctx)
    table = Table(title="Component templates")
    table.add_column("Template")
    table.add_column("Parameters")
    table.add_column("Attributes")
    table.add_column("Boundary")
    for template in engine.registry:
        table.add_row(
            template.id,
            ", ".join(slot.name for slot in template.parameters) or "-",
            ", ".join(template.attribute_names) or "-",
            "yes" if template.security_boundary else "",
        )
    Console().print(table)


@cli.command("validate")
@_DEPLOYMENT_ARGUMENT
@click.pass_context
def validate(ctx: click.Context, deployment: Path) -> None:
    """Check a deployment document without generating any secret material."""

    engine = _engine(ctx)
    try:
        document = load_deployment(deployment)
        _, enablement = engine.validate(document)
    except StackweaveError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(
        f"Deployment '{document.context.name}' is valid: "
        f"{len(enablement.enabled_keys)} enabled, "
        f"{len(enablement.disabled_keys)} disabled."
    )


@cli.command("plan")
@_DEPLOYMENT_ARGUMENT
@_FORMAT_OPTION
@click.option(
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the full resolution snapshot to this JSON file.",
)
@click.pass_context
def plan(ctx: click.Context, deployment: Path, output_format: str, output: Path | None) -> None:
    """Show the ordered materialisation plan."""

    result = _resolve(ctx, deployment)
    if output is not None:
        write_snapshot(result_to_mapping(result), output)
    if output_format == "json":
        payload = {
            "deployment": result.context.name,
            "steps": [step.as_dict() for step in result.plan.steps],
            "waves": [list(wave) for wave in result.plan.waves()],
            "disabled": {
                key: result.enablement.state(key).value
                for key in result.enablement.disabled_keys
            },
        }
        click.echo(json.dumps(payload, indent=2))
        return

    wave_of = {
        key: index for index, wave in enumerate(result.plan.waves()) for key in wave
    }
    console = Console()
    table = Table(title=f"Materialisation plan for {result.context.name}")
    table.add_column("#", justify="right")
    table.add_column("Instance")
    table.add_column("Template")
    table.add_column("Wave", justify="right")
    table.add_column("Waits for")
    for position, step in enumerate(result.plan.steps, start=1):
        table.add_row(
            str(position),
            step.key,
            step.template_id,
            str(wave_of[step.key]),
            ", ".join(step.wait_for) or "-",
        )
    console.print(table)
    for key in result.enablement.disabled_keys:
        cause = result.enablement.causes.get(key)
        detail = f" (hard dependency '{cause}' is disabled)" if cause else ""
        console.print(f"[yellow]Skipped {key}{detail}[/yellow]")


@cli.command("attributes")
@_DEPLOYMENT_ARGUMENT
@_FORMAT_OPTION
@click.pass_context
def attributes(ctx: click.Context, deployment: Path, output_format: str) -> None:
    """Show every published attribute; absent values print as null."""

    result = _resolve(ctx, deployment)
    published = result.published
    if output_format == "json":
        click.echo(json.dumps(published, indent=2))
        return

    table = Table(title=f"Published attributes for {result.context.name}")
    table.add_column("Instance")
    table.add_column("Attribute")
    table.add_column("Value")
    for key, values in published.items():
        for index, (name, value) in enumerate(values.items()):
            table.add_row(key if index == 0 else "", name, _display(value))
    Console().print(table)


@cli.command("rules")
@_DEPLOYMENT_ARGUMENT
@_FORMAT_OPTION
@click.pass_context
def rules(ctx: click.Context, deployment: Path, output_format: str) -> None:
    """Show the concrete security rules of every enabled boundary."""

    result = _resolve(ctx, deployment)
    if output_format == "json":
        payload = {
            boundary: [rule.as_dict() for rule in boundary_rules]
            for boundary, boundary_rules in result.rules.items()
        }
        click.echo(json.dumps(payload, indent=2))
        return

    console = Console()
    if not any(result.rules.values()):
        console.print("[yellow]No security rules resolved.[/yellow]")
        return
    table = Table(title=f"Security rules for {result.context.name}")
    table.add_column("Boundary")
    table.add_column("Direction")
    table.add_column("Protocol")
    table.add_column("Ports")
    table.add_column("Peer")
    table.add_column("Origin")
    for boundary, boundary_rules in result.rules.items():
        for rule in boundary_rules:
            table.add_row(
                boundary,
                rule.direction.value,
                rule.protocol,
                str(rule.ports),
                ", ".join(rule.peer),
                rule.origin if rule.origin == "declared" else f"reverse ({rule.declared_by})",
            )
    console.print(table)


@cli.command("diff")
@_DEPLOYMENT_ARGUMENT
@click.argument("baseline", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def diff(ctx: click.Context, deployment: Path, baseline: Path) -> None:
    """Compare a fresh resolution with a snapshot written by ``plan --output``."""

    result = _resolve(ctx, deployment)
    try:
        reference = load_snapshot(baseline)
    except StackweaveError as exc:
        raise click.ClickException(str(exc)) from exc
    differences = detect_plan_drift(result_to_mapping(result), reference)
    if not differences:
        click.echo("No drift detected.")
        return
    for difference in differences:
        click.echo(f" - {difference}")
    ctx.exit(1)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    cli()
