"""Main CLI for the autoflow workflow engine."""

import functools
import json
import signal
import threading
import time
from datetime import datetime
from pathlib import Path

import click
import yaml
from rich.console import Console
from rich.table import Table

from ..core.config import DEFAULT_CONFIG_PATH, load_config, load_workflow_file
from ..core.engine import EngineCore
from ..core.models import RunStatus, TriggerState
from ..errors import EngineError, WorkflowValidationError
from ..safeguards.circuit_breaker import CircuitState
from ..utils.atomic_io import atomic_write_text
from ..utils.rich_logging import setup_rich_logging
from ..worker.pool import WorkerPool


console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "running": "cyan",
    "completed": "green",
    "failed": "red",
    "cancelled": "magenta",
    "timed_out": "red",
    "skipped": "dim",
    "filtered": "dim",
    "active": "green",
    "paused": "yellow",
    "error": "red",
}

EXAMPLE_CONFIG = """\
# autoflow engine configuration
store:
  path: autoflow.db

workers:
  min_workers: 1
  max_workers: 4

triggers:
  dedup_window_seconds: 60
  error_threshold: 5

actions:
  default_timeout_ms: 30000
  shell_enabled: true

logging:
  level: INFO

secrets: {}

workflows_dir: workflows
"""

EXAMPLE_WORKFLOW = """\
id: hello
name: Hello world
trigger:
  type: manual
nodes:
  - id: greet
    type: action
    actionType: data.set
    config:
      values:
        message: "Hello {{ payload.name | default('world') }}"
  - id: echo
    type: action
    actionType: shell.exec
    config:
      command: "echo {{ nodes.greet.output.message }}"
edges:
  - source: greet
    target: echo
"""


def _styled(value: str) -> str:
    style = STATUS_STYLES.get(value)
    return f"[{style}]{value}[/]" if style else value


def _ts(value) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


def handle_errors(func):
    """Print engine errors instead of a traceback and exit non-zero."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except WorkflowValidationError as e:
            console.print(f"[red]Invalid workflow ({len(e.errors)} error(s)):[/]")
            for message in e.errors:
                console.print(f"  • {message}")
            raise SystemExit(1)
        except (EngineError, FileNotFoundError, ValueError) as e:
            console.print(f"[red]Error: {e}[/]")
            raise SystemExit(1)

    return wrapper


def _engine(ctx) -> EngineCore:
    """Build the engine on first use; closed when the command finishes."""
    engine = ctx.obj.get("engine")
    if engine is None:
        engine = EngineCore(ctx.obj["config"])
        ctx.obj["engine"] = engine
        ctx.call_on_close(engine.close)
    return engine


def _parse_payload(payload: str) -> dict:
    if not payload:
        return {}
    if payload.startswith("@"):
        payload = Path(payload[1:]).read_text()
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"payload is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise click.BadParameter("payload must be a JSON object")
    return data


@click.group()
@click.option("--config", "-c", "config_path", default=str(DEFAULT_CONFIG_PATH), help="Engine config file")
@click.option("--log-level", default=None, help="Override the configured log level")
@click.pass_context
def cli(ctx, config_path, log_level):
    """autoflow - durable DAG workflow automation."""
    ctx.ensure_object(dict)
    config = load_config(Path(config_path))
    if log_level:
        config.logging.level = log_level.upper()
    setup_rich_logging(
        log_level=config.logging.level,
        log_file=config.logging.file,
        use_json=config.logging.json_format,
    )
    ctx.obj["config_path"] = Path(config_path)
    ctx.obj["config"] = config


@cli.command()
@click.option("--force", is_flag=True, help="Overwrite existing files")
@click.pass_context
def init(ctx, force):
    """Create an example config and workflow in the current directory."""
    console.print("[bold green]Initializing autoflow project...[/]")
    config_path = ctx.obj["config_path"]
    workflow_path = config_path.parent / "workflows" / "hello.yaml"

    for path, content in ((config_path, EXAMPLE_CONFIG), (workflow_path, EXAMPLE_WORKFLOW)):
        if path.exists() and not force:
            console.print(f"  [dim]Kept existing {path}[/]")
            continue
        atomic_write_text(path, content, make_parents=True)
        console.print(f"  Created {path}")

    console.print("[green]✓ Initialization complete![/]")
    console.print("\nNext steps:")
    console.print(f"1. autoflow workflow add {workflow_path}")
    console.print("2. autoflow run hello --wait")


# Workflows


@cli.group()
def workflow():
    """Manage workflow definitions."""


@workflow.command("add")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
@handle_errors
def workflow_add(ctx, path):
    """Register a workflow from a YAML or JSON file."""
    definition = load_workflow_file(path)
    version = _engine(ctx).register_workflow(definition)
    console.print(f"[green]✓ Registered {version.workflow_id} (v{version.version})[/]")


@workflow.command("update")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
@handle_errors
def workflow_update(ctx, path):
    """Store a new version of an existing workflow."""
    definition = load_workflow_file(path)
    version = _engine(ctx).update_workflow(definition.id, definition)
    console.print(f"[green]✓ Updated {version.workflow_id} to v{version.version}[/]")


@workflow.command("rm")
@click.argument("workflow_id")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
@handle_errors
def workflow_rm(ctx, workflow_id, yes):
    """Delete a workflow with its versions, runs and trigger."""
    if not yes and not click.confirm(f"Delete workflow '{workflow_id}' and all its runs?"):
        return
    _engine(ctx).delete_workflow(workflow_id)
    console.print(f"[green]✓ Deleted {workflow_id}[/]")


@workflow.command("ls")
@click.pass_context
@handle_errors
def workflow_ls(ctx):
    """List registered workflows."""
    versions = _engine(ctx).list_workflows()
    if not versions:
        console.print("[dim]No workflows registered[/]")
        return
    table = Table(title="Workflows")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Version", justify="right")
    table.add_column("Nodes", justify="right")
    table.add_column("Trigger")
    table.add_column("Updated")
    for version in versions:
        definition = version.definition
        table.add_row(
            version.workflow_id,
            definition.get("name", ""),
            str(version.version),
            str(len(definition.get("nodes", []))),
            definition.get("trigger", {}).get("type", "manual"),
            _ts(version.created_at),
        )
    console.print(table)


@workflow.command("validate")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
@handle_errors
def workflow_validate(ctx, path):
    """Check a workflow file without registering it."""
    try:
        definition = load_workflow_file(path)
    except WorkflowValidationError as e:
        errors = e.errors
    else:
        errors = _engine(ctx).validate_workflow(definition)
    if errors:
        console.print(f"[red]✗ {path} has {len(errors)} error(s):[/]")
        for message in errors:
            console.print(f"  • {message}")
        raise SystemExit(1)
    console.print(f"[green]✓ {path} is valid[/]")


@workflow.command("show")
@click.argument("workflow_id")
@click.option("--version", "-v", "version", type=int, default=None, help="Version (default: current)")
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Write to file")
@click.pass_context
@handle_errors
def workflow_show(ctx, workflow_id, version, output):
    """Print (or export) a stored workflow definition as YAML."""
    definition = _engine(ctx).get_workflow(workflow_id, version)
    text = yaml.safe_dump(definition.to_dict(), sort_keys=False)
    if output:
        atomic_write_text(output, text, make_parents=True)
        console.print(f"[green]✓ Wrote {output}[/]")
    else:
        console.print(text)


# Runs


@cli.command()
@click.argument("workflow_id")
@click.option("--payload", "-p", default="", help="JSON object, or @file.json")
@click.option("--wait", is_flag=True, help="Execute in-process and wait for the result")
@click.option("--timeout", default=300.0, help="Seconds to wait with --wait")
@click.pass_context
@handle_errors
def run(ctx, workflow_id, payload, wait, timeout):
    """Start a run of a workflow."""
    engine = _engine(ctx)
    run_id = engine.trigger_workflow(workflow_id, _parse_payload(payload))
    if run_id is None:
        console.print("[yellow]Entry conditions not met; no run created[/]")
        return
    console.print(f"[green]✓ Run {run_id} queued[/]")
    if not wait:
        return

    pool = WorkerPool(engine)
    pool.start()
    deadline = time.monotonic() + timeout
    try:
        while time.monotonic() < deadline:
            if engine.runs.get(run_id).is_terminal:
                break
            time.sleep(0.2)
    finally:
        pool.stop()
    _print_run(engine, run_id)
    _print_circuits(engine)


def _print_run(engine: EngineCore, run_id: str) -> None:
    report = engine.get_run_status(run_id)
    run = report.run
    console.print(f"[bold]Run {run.id}[/] ({run.workflow_id} v{run.workflow_version})")
    console.print(f"  Status:   {_styled(run.status.value)}")
    console.print(f"  Created:  {_ts(run.created_at)}")
    console.print(f"  Started:  {_ts(run.started_at)}")
    console.print(f"  Finished: {_ts(run.finished_at)}")
    if run.error:
        category = f" [{run.error_category.value}]" if run.error_category else ""
        console.print(f"  Error:    [red]{run.error}[/]{category}")
    if report.job:
        console.print(
            f"  Job:      {report.job.id} {_styled(report.job.status.value)} "
            f"(attempt {report.job.attempts}/{report.job.max_attempts})"
        )

    if report.node_runs:
        table = Table(title="Nodes")
        table.add_column("Node", style="cyan")
        table.add_column("Attempt", justify="right")
        table.add_column("Status")
        table.add_column("Duration", justify="right")
        table.add_column("Error")
        for node_run in report.node_runs:
            duration = "-"
            if node_run.finished_at is not None:
                duration = f"{(node_run.finished_at - node_run.started_at) * 1000:.0f}ms"
            table.add_row(
                node_run.node_id,
                str(node_run.attempt),
                _styled(node_run.status.value),
                duration,
                node_run.error or "",
            )
        console.print(table)


def _print_circuits(engine: EngineCore) -> None:
    """Show breakers that are not closed; nothing when all are healthy."""
    tripped = [s for s in engine.pipeline.breakers.snapshots() if s.state != CircuitState.CLOSED]
    if not tripped:
        return
    table = Table(title="Circuit breakers")
    table.add_column("Target", style="cyan")
    table.add_column("State")
    table.add_column("Failures", justify="right")
    for snap in tripped:
        table.add_row(snap.target, _styled(snap.state.value), str(snap.consecutive_failures))
    console.print(table)


@cli.command()
@click.argument("run_id", required=False)
@click.option("--workflow", "-w", "workflow_id", default=None, help="Filter by workflow")
@click.option("--status", "-s", type=click.Choice([s.value for s in RunStatus]), default=None)
@click.option("--limit", "-n", default=20, help="Max runs to list")
@click.pass_context
@handle_errors
def status(ctx, run_id, workflow_id, status, limit):
    """Show one run in detail, or list recent runs."""
    engine = _engine(ctx)
    if run_id:
        _print_run(engine, run_id)
        return

    runs = engine.list_runs(workflow_id, RunStatus(status) if status else None, limit)
    counts = engine.queue.counts()
    console.print("Queue: " + ", ".join(f"{name}={n}" for name, n in counts.items()))
    if not runs:
        console.print("[dim]No runs[/]")
        return
    table = Table(title="Runs")
    table.add_column("Run", style="cyan")
    table.add_column("Workflow")
    table.add_column("Status")
    table.add_column("Created")
    table.add_column("Error")
    for item in runs:
        table.add_row(
            item.id,
            f"{item.workflow_id} v{item.workflow_version}",
            _styled(item.status.value),
            _ts(item.created_at),
            (item.error or "")[:60],
        )
    console.print(table)


@cli.command()
@click.argument("run_id")
@click.pass_context
@handle_errors
def cancel(ctx, run_id):
    """Cancel a pending or running run."""
    _engine(ctx).cancel_run(run_id)
    console.print(f"[green]✓ Cancellation requested for {run_id}[/]")


@cli.command()
@click.argument("run_id")
@click.pass_context
@handle_errors
def retry(ctx, run_id):
    """Re-enqueue a non-terminal run so it resumes where it stopped."""
    job_id = _engine(ctx).retry_run(run_id)
    console.print(f"[green]✓ Run {run_id} queued as job {job_id}[/]")


# Dead letters


@cli.group()
def dead():
    """Inspect and resolve dead-letter jobs."""


@dead.command("ls")
@click.pass_context
@handle_errors
def dead_ls(ctx):
    """List unresolved dead-letter jobs."""
    engine = _engine(ctx)
    jobs = engine.list_dead_jobs()
    if not jobs:
        console.print("[green]No dead-letter jobs[/]")
        return
    table = Table(title="Dead letters")
    table.add_column("Job", style="cyan")
    table.add_column("Run")
    table.add_column("Attempts", justify="right")
    table.add_column("Last error")
    table.add_column("Since")
    for job in jobs:
        table.add_row(
            job.id,
            job.run_id,
            f"{job.attempts}/{job.max_attempts}",
            (job.last_error or "")[:80],
            _ts(job.updated_at),
        )
    console.print(table)


@dead.command("retry")
@click.argument("job_id")
@click.pass_context
@handle_errors
def dead_retry(ctx, job_id):
    """Start a fresh run with the dead job's payload."""
    run_id = _engine(ctx).retry_dead_job(job_id)
    console.print(f"[green]✓ Requeued as run {run_id}[/]")


@dead.command("discard")
@click.argument("job_id")
@click.pass_context
@handle_errors
def dead_discard(ctx, job_id):
    """Mark a dead job as discarded."""
    if _engine(ctx).discard_dead_job(job_id):
        console.print(f"[green]✓ Discarded {job_id}[/]")
    else:
        console.print(f"[yellow]{job_id} was already resolved[/]")


# Triggers


@cli.group()
def trigger():
    """Inspect and control workflow triggers."""


@trigger.command("ls")
@click.pass_context
@handle_errors
def trigger_ls(ctx):
    """List triggers with their state."""
    statuses = _engine(ctx).triggers.list_status()
    if not statuses:
        console.print("[dim]No triggers[/]")
        return
    table = Table(title="Triggers")
    table.add_column("Trigger", style="cyan")
    table.add_column("Type")
    table.add_column("State")
    table.add_column("Fired", justify="right")
    table.add_column("Dropped", justify="right")
    table.add_column("Failures", justify="right")
    table.add_column("Last fired")
    table.add_column("Last error")
    for item in statuses:
        table.add_row(
            item.trigger_id,
            item.type,
            _styled(item.state.value),
            str(item.fire_count),
            str(item.dropped_count),
            str(item.consecutive_failures),
            _ts(item.last_fired_at),
            (item.last_error or "")[:60],
        )
    console.print(table)


@trigger.command("fire")
@click.argument("trigger_id")
@click.option("--payload", "-p", default="", help="JSON object, or @file.json")
@click.pass_context
@handle_errors
def trigger_fire(ctx, trigger_id, payload):
    """Fire a trigger by hand (subject to dedup)."""
    run_id = _engine(ctx).triggers.fire(trigger_id, _parse_payload(payload))
    if run_id is None:
        console.print("[yellow]No run created (inactive, duplicate or entry conditions not met)[/]")
    else:
        console.print(f"[green]✓ Run {run_id} queued[/]")


@trigger.command("events")
@click.argument("trigger_id")
@click.option("--limit", "-n", default=20, help="Number of events to show")
@click.pass_context
@handle_errors
def trigger_events(ctx, trigger_id, limit):
    """Show recently accepted events (the dedup ledger) for a trigger."""
    events = _engine(ctx).triggers.recent_events(trigger_id, limit)
    if not events:
        console.print(f"[dim]No events for {trigger_id}[/]")
        return
    table = Table(title=f"Events for {trigger_id}")
    table.add_column("Event", style="cyan")
    table.add_column("Fired")
    table.add_column("Dedup key")
    table.add_column("Payload")
    for event in events:
        table.add_row(event.id[:12], _ts(event.fired_at), event.dedup_key[:40], json.dumps(event.payload)[:60])
    console.print(table)


@trigger.command("pause")
@click.argument("trigger_id")
@click.pass_context
@handle_errors
def trigger_pause(ctx, trigger_id):
    """Pause a trigger."""
    result = _engine(ctx).triggers.pause(trigger_id)
    console.print(f"Trigger {trigger_id}: {_styled(result.state.value)}")


@trigger.command("resume")
@click.argument("trigger_id")
@click.pass_context
@handle_errors
def trigger_resume(ctx, trigger_id):
    """Resume a paused or errored trigger."""
    result = _engine(ctx).triggers.resume(trigger_id)
    if result.state != TriggerState.ACTIVE:
        console.print(f"[yellow]Trigger {trigger_id} is {result.state.value}[/]")
    else:
        console.print(f"Trigger {trigger_id}: {_styled(result.state.value)}")


# Service


@cli.command()
@click.option("--load/--no-load", default=True, help="Register new workflows from workflows_dir")
@click.pass_context
@handle_errors
def start(ctx, load):
    """Run triggers and workers until interrupted."""
    engine = _engine(ctx)
    workflows_dir = ctx.obj["config"].workflows_dir
    if load and workflows_dir is not None and workflows_dir.is_dir():
        for path in sorted(workflows_dir.glob("*.y*ml")) + sorted(workflows_dir.glob("*.json")):
            definition = load_workflow_file(path)
            if engine.workflows.exists(definition.id):
                continue
            engine.register_workflow(definition)
            console.print(f"  Registered {definition.id} from {path.name}")

    console.print("[bold green]Starting autoflow[/]")
    stop_event = threading.Event()

    def _on_signal(signum, frame):
        stop_event.set()

    signal.signal(signal.SIGTERM, _on_signal)

    pool = WorkerPool(engine)
    engine.start()
    pool.start()
    console.print(f"[green]✓ {len(engine.triggers.list_status())} trigger(s) and worker pool running[/]")
    console.print("\n[bold]Press Ctrl+C to stop.[/]")
    try:
        while not stop_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass
    console.print("\n[yellow]Stopping...[/]")
    pool.stop()
    _print_circuits(engine)


if __name__ == "__main__":
    cli()
