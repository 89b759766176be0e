"""Command line interface for managing prismflow templates and instances."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from prismflow.cli_utils.templates import (
    _format_history,
    _format_instance,
    _format_step,
    _load_template_file,
)
from prismflow.config import load_config
from prismflow.engine import WorkflowEngine
from prismflow.errors import WorkflowError
from prismflow.persistence import get_repository
from prismflow.validation import validate_template

app = typer.Typer(help="CLI for prismflow approval workflows")

# Command groups
template_app = typer.Typer(help="Commands for managing workflow templates")
instance_app = typer.Typer(help="Commands for running workflow instances")

app.add_typer(template_app, name="template")
app.add_typer(instance_app, name="instance")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """prismflow CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _engine() -> WorkflowEngine:
    config = load_config()
    return WorkflowEngine(get_repository(), config.directory.build(), config)


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


@template_app.command("validate")
def template_validate(path: Path) -> None:
    """
    Check a template file without saving it.

    Prints every error and warning. Exits with code 1 when the template has
    errors.

    Example:
        prismflow template validate ./templates/purchase_approval.yaml
    """
    try:
        template = _load_template_file(path)
    except (OSError, ValueError) as exc:
        _fail(f"Could not read template: {exc}")

    result = validate_template(template)
    for issue in result.errors:
        typer.secho(f"error: {issue.message}", fg=typer.colors.RED)
    for issue in result.warnings:
        typer.secho(f"warning: {issue.message}", fg=typer.colors.YELLOW)
    if not result.valid:
        raise typer.Exit(code=1)
    typer.echo(f"Template '{template.name}' is valid")


@template_app.command("import")
def template_import(path: Path) -> None:
    """Validate a template file and store it."""
    try:
        template = _load_template_file(path)
    except (OSError, ValueError) as exc:
        _fail(f"Could not read template: {exc}")

    try:
        saved = asyncio.run(_engine().save_template(template))
    except WorkflowError as exc:
        _fail(str(exc))
    typer.echo(f"Imported template {saved.id} ({saved.name})")


@template_app.command("list")
def template_list(
    active_only: bool = typer.Option(False, help="Only show active templates"),
) -> None:
    """List stored templates."""
    templates = asyncio.run(_engine().list_templates(active_only=active_only))
    if not templates:
        typer.echo("No templates found")
        return
    for template in templates:
        state = "active" if template.is_active else "inactive"
        typer.echo(f"{template.id}\t{template.name}\t{state}")


@instance_app.command("start")
def instance_start(
    project_id: str,
    template_id: str,
    started_by: Optional[str] = typer.Option(None, help="User starting the workflow"),
) -> None:
    """
    Start a workflow instance for a project.

    Example:
        prismflow instance start project-42 purchase-approval --started-by user-1
    """
    engine = _engine()

    async def _start():
        instance = await engine.start_workflow(
            project_id, template_id, started_by=started_by
        )
        return instance, await engine.get_active_steps(instance.id)

    try:
        instance, steps = asyncio.run(_start())
    except WorkflowError as exc:
        _fail(str(exc))
    typer.echo(f"Started instance {instance.id}: {instance.status.value}")
    for step in steps:
        typer.echo(_format_step(step))


@instance_app.command("advance")
def instance_advance(
    instance_id: str,
    step_id: str,
    decision: Optional[str] = typer.Option(None, help="Decision such as approved"),
    actor: Optional[str] = typer.Option(None, help="User recording the decision"),
    feedback: Optional[str] = typer.Option(None, help="Free-text feedback"),
) -> None:
    """
    Complete an active step and route to its successors.

    Example:
        prismflow instance advance <instance-id> <step-id> --decision approved
    """
    try:
        result = asyncio.run(
            _engine().advance(
                instance_id, step_id, decision, actor_id=actor, feedback=feedback
            )
        )
    except WorkflowError as exc:
        _fail(str(exc))

    if result.completed:
        typer.echo(f"Instance {instance_id} completed")
    for step in result.new_active_steps:
        typer.echo(_format_step(step))
    for join in result.pending_joins:
        typer.echo(
            f"Waiting at {join.node_id or join.sync_node_id}: {len(join.arrived)}/{len(join.required)} inputs arrived"
        )


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """Show status, open steps and history of an instance."""
    try:
        state = asyncio.run(_engine().get_workflow_state(instance_id))
    except WorkflowError as exc:
        _fail(str(exc))

    instance = state.instance
    typer.echo(f"Instance {instance.id}: {instance.status.value}")
    typer.echo(f"Template: {instance.started_snapshot.template_name}")
    if state.is_parallel:
        typer.echo("Parallel paths: yes")
    labels = {n.id: n.label for n in instance.started_snapshot.nodes}
    for step in state.active_steps:
        typer.echo(_format_step(step, labels.get(step.node_id)))
        for nxt in state.next_steps.get(step.id, []):
            via = f" ({nxt.condition_label})" if nxt.condition_label else ""
            typer.echo(f"    next: {nxt.label or nxt.node_id}{via}")
    if instance.completed_snapshot:
        for node_id, user in instance.completed_snapshot.node_assignments.items():
            typer.echo(f"  {labels.get(node_id, node_id)}: {user.user_name}")
    typer.echo("History:")
    for line in _format_history(state.history):
        typer.echo(line)


@instance_app.command("list")
def instance_list(
    project: Optional[str] = typer.Option(None, help="Filter by project id"),
) -> None:
    """List workflow instances."""
    instances = asyncio.run(_engine().list_instances(project_id=project))
    if not instances:
        typer.echo("No instances found")
        return
    for instance in instances:
        typer.echo(_format_instance(instance))


@instance_app.command("cancel")
def instance_cancel(
    instance_id: str,
    by: Optional[str] = typer.Option(None, help="User cancelling the workflow"),
) -> None:
    """Cancel an active instance and close its open steps."""
    try:
        instance = asyncio.run(_engine().cancel_workflow(instance_id, cancelled_by=by))
    except WorkflowError as exc:
        _fail(str(exc))
    typer.echo(f"Instance {instance.id}: {instance.status.value}")


@app.command("pending")
def pending(user_id: str) -> None:
    """List approval and form steps waiting on a user."""
    steps = asyncio.run(_engine().get_user_pending_steps(user_id))
    if not steps:
        typer.echo("No pending steps")
        return
    for item in steps:
        typer.echo(
            f"{item.instance_id}\t{item.step.id}\t{item.project_id}\t"
            f"{item.template_name or ''}\t{item.node_label or item.step.node_id}"
        )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
