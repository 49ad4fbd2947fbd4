"""Main CLI entry point for hive."""

import json
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import click

from hive.config.manager import ConfigManager
from hive.logs import configure_logging
from hive.orchestration.branches import BranchScheduler
from hive.orchestration.checkpoint import CheckpointStore
from hive.orchestration.environment import EnvironmentProbe
from hive.orchestration.errors import HiveError
from hive.orchestration.events import EventLog
from hive.orchestration.handoff import HandoffStore
from hive.orchestration.report import ReportProtocol
from hive.orchestration.router import Router
from hive.orchestration.state import RunStateStore
from hive.output.formatter import OutputFormatter


@contextmanager
def _reported(formatter: OutputFormatter) -> Iterator[None]:
    """Turn orchestration errors into a diagnostic and exit status 1."""
    try:
        yield
    except (HiveError, RuntimeError, ValueError) as e:
        formatter.print_error(str(e))
        raise SystemExit(1)


def _parse_json(value: str | None, option: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint=option)


def _hive_dir(ctx: click.Context) -> Path:
    return ctx.obj["hive_dir"]


def _formatter(ctx: click.Context) -> OutputFormatter:
    return ctx.obj["formatter"]


def _checkpoint_store(ctx: click.Context) -> CheckpointStore:
    hive_dir = _hive_dir(ctx)
    events = EventLog(hive_dir)
    return CheckpointStore(
        hive_dir,
        RunStateStore(hive_dir),
        handoffs=HandoffStore(hive_dir, events=events),
        events=events,
    )


def _handoff_store(ctx: click.Context) -> HandoffStore:
    hive_dir = _hive_dir(ctx)
    return HandoffStore(hive_dir, events=EventLog(hive_dir))


@click.group()
@click.option(
    "--hive-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Run state directory (default: .hive in the current directory)",
)
@click.option("-v", "--verbose", is_flag=True, help="Verbose output")
@click.option("--no-color", is_flag=True, help="Disable colors")
@click.version_option(package_name="hive-orchestrator")
@click.pass_context
def cli(ctx: click.Context, hive_dir: Path | None, verbose: bool, no_color: bool) -> None:
    """Hive - multi-agent workflow orchestration.

    \b
    Examples:
        hive checkpoint save "before refactor"
        hive checkpoint resume-action
        hive route classify --type test --title "e2e checkout flow"
        hive report check agent-output.txt
        hive branches status <run-id>
    """
    config = ConfigManager.get_config()
    verbose = verbose or config.global_.verbose
    configure_logging(verbose)

    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["hive_dir"] = hive_dir or config.get_hive_dir()
    ctx.obj["formatter"] = OutputFormatter(
        color=config.global_.color and not no_color, verbose=verbose
    )


# --- checkpoint ---------------------------------------------------------------


@cli.group()
def checkpoint() -> None:
    """Save, inspect and restore run checkpoints."""
    pass


@checkpoint.command("save")
@click.argument("reason", default="manual")
@click.pass_context
def checkpoint_save(ctx: click.Context, reason: str) -> None:
    """Snapshot the live run state."""
    formatter = _formatter(ctx)
    with _reported(formatter):
        checkpoint_id = _checkpoint_store(ctx).save(reason)
    formatter.print_success(f"Saved checkpoint {checkpoint_id}")


@checkpoint.command("list")
@click.option("--json", "output_json", is_flag=True, help="JSON output")
@click.pass_context
def checkpoint_list(ctx: click.Context, output_json: bool) -> None:
    """List checkpoints, newest first."""
    formatter = _formatter(ctx)
    summaries = [s.to_dict() for s in _checkpoint_store(ctx).list()]
    if output_json:
        formatter.print_json(summaries)
    else:
        formatter.print_checkpoints(summaries)


@checkpoint.command("show")
@click.argument("checkpoint_id")
@click.option("--agent-context", is_flag=True, help="Only the context an agent needs to resume")
@click.pass_context
def checkpoint_show(ctx: click.Context, checkpoint_id: str, agent_context: bool) -> None:
    """Show one checkpoint."""
    formatter = _formatter(ctx)
    store = _checkpoint_store(ctx)
    with _reported(formatter):
        if agent_context:
            formatter.print_json(store.agent_context(checkpoint_id))
        else:
            formatter.print_json(store.show(checkpoint_id).to_dict())


@checkpoint.command("restore")
@click.argument("checkpoint_id")
@click.pass_context
def checkpoint_restore(ctx: click.Context, checkpoint_id: str) -> None:
    """Overwrite the live run state with a checkpoint."""
    formatter = _formatter(ctx)
    with _reported(formatter):
        context = _checkpoint_store(ctx).restore(checkpoint_id)
    formatter.print_json(context.to_dict())


@checkpoint.command("delete")
@click.argument("checkpoint_id")
@click.pass_context
def checkpoint_delete(ctx: click.Context, checkpoint_id: str) -> None:
    """Delete one checkpoint."""
    formatter = _formatter(ctx)
    if not _checkpoint_store(ctx).delete(checkpoint_id):
        formatter.print_error(f"Checkpoint not found: {checkpoint_id}")
        raise SystemExit(1)
    formatter.print_success(f"Deleted checkpoint {checkpoint_id}")


@checkpoint.command("cleanup")
@click.option("-k", "--keep", type=int, help="Number of checkpoints to keep")
@click.pass_context
def checkpoint_cleanup(ctx: click.Context, keep: int | None) -> None:
    """Delete all but the most recent checkpoints."""
    formatter = _formatter(ctx)
    keep = keep if keep is not None else ctx.obj["config"].checkpoint.keep
    with _reported(formatter):
        removed = _checkpoint_store(ctx).cleanup(keep)
    formatter.print_info(f"Removed {len(removed)} checkpoints, kept at most {keep}")


@checkpoint.command("latest")
@click.pass_context
def checkpoint_latest(ctx: click.Context) -> None:
    """Print the id of the newest checkpoint."""
    formatter = _formatter(ctx)
    latest = _checkpoint_store(ctx).latest()
    if latest is None:
        formatter.print_error("No checkpoints")
        raise SystemExit(1)
    click.echo(latest)


@checkpoint.command("resume-action")
@click.argument("checkpoint_id", required=False)
@click.pass_context
def checkpoint_resume_action(ctx: click.Context, checkpoint_id: str | None) -> None:
    """Show what resuming from a checkpoint (default: newest) should do."""
    formatter = _formatter(ctx)
    store = _checkpoint_store(ctx)
    checkpoint_id = checkpoint_id or store.latest()
    if checkpoint_id is None:
        formatter.print_error("No checkpoints")
        raise SystemExit(1)
    with _reported(formatter):
        action = store.get_resume_action(checkpoint_id)
    formatter.print_json(action.to_dict())


# --- handoff ------------------------------------------------------------------


@cli.group()
def handoff() -> None:
    """Create and track handoffs between agent roles."""
    pass


@handoff.command("create")
@click.argument("from_agent")
@click.argument("to_agent")
@click.argument("summary")
@click.option("--tasks", "tasks_json", help="Task list as a JSON array")
@click.option("--context", "context_json", help="Context as a JSON object")
@click.option("-e", "--expectation", "expectations", multiple=True, help="Expectation (repeatable)")
@click.option("-c", "--criterion", "criteria", multiple=True, help="Success criterion (repeatable)")
@click.pass_context
def handoff_create(
    ctx: click.Context,
    from_agent: str,
    to_agent: str,
    summary: str,
    tasks_json: str | None,
    context_json: str | None,
    expectations: tuple[str, ...],
    criteria: tuple[str, ...],
) -> None:
    """Write a pending handoff and print its id."""
    tasks = _parse_json(tasks_json, "--tasks")
    context = _parse_json(context_json, "--context")
    handoff_id = _handoff_store(ctx).create(
        from_agent, to_agent, summary,
        tasks=tasks, context=context,
        expectations=list(expectations), success_criteria=list(criteria),
    )
    click.echo(handoff_id)


@handoff.command("read")
@click.argument("handoff_id")
@click.pass_context
def handoff_read(ctx: click.Context, handoff_id: str) -> None:
    """Show one handoff."""
    formatter = _formatter(ctx)
    with _reported(formatter):
        document = _handoff_store(ctx).read(handoff_id)
    formatter.print_json(document.to_dict())


@handoff.command("received")
@click.argument("handoff_id")
@click.pass_context
def handoff_received(ctx: click.Context, handoff_id: str) -> None:
    """Mark a handoff as picked up by its receiver."""
    formatter = _formatter(ctx)
    with _reported(formatter):
        _handoff_store(ctx).mark_received(handoff_id)
    formatter.print_success(f"{handoff_id}: in_progress")


@handoff.command("complete")
@click.argument("handoff_id")
@click.option("--results", "results_json", help="Results as a JSON object")
@click.pass_context
def handoff_complete(ctx: click.Context, handoff_id: str, results_json: str | None) -> None:
    """Mark a handoff as complete."""
    formatter = _formatter(ctx)
    results = _parse_json(results_json, "--results")
    with _reported(formatter):
        _handoff_store(ctx).mark_complete(handoff_id, results)
    formatter.print_success(f"{handoff_id}: complete")


@handoff.command("pending")
@click.argument("agent")
@click.pass_context
def handoff_pending(ctx: click.Context, agent: str) -> None:
    """List pending handoffs addressed to an agent."""
    for handoff_id in _handoff_store(ctx).pending_for(agent):
        click.echo(handoff_id)


@handoff.command("latest")
@click.argument("agent")
@click.pass_context
def handoff_latest(ctx: click.Context, agent: str) -> None:
    """Print the newest handoff addressed to an agent."""
    formatter = _formatter(ctx)
    handoff_id = _handoff_store(ctx).latest_for(agent)
    if handoff_id is None:
        formatter.print_error(f"No handoffs for {agent}")
        raise SystemExit(1)
    click.echo(handoff_id)


# --- branches -----------------------------------------------------------------


@cli.group()
def branches() -> None:
    """Inspect parallel branches of a run."""
    pass


@branches.command("status")
@click.argument("run_id")
@click.pass_context
def branches_status(ctx: click.Context, run_id: str) -> None:
    """Show every branch of a run."""
    formatter = _formatter(ctx)
    scheduler = BranchScheduler(_hive_dir(ctx))
    with _reported(formatter):
        summary = scheduler.summary(run_id)
        results = scheduler.collect_results(run_id)
    formatter.print_branches(run_id, [r["state"] for r in results], summary.to_dict())


@branches.command("summary")
@click.argument("run_id")
@click.pass_context
def branches_summary(ctx: click.Context, run_id: str) -> None:
    """Print the branch counts and merge status as JSON."""
    formatter = _formatter(ctx)
    with _reported(formatter):
        summary = BranchScheduler(_hive_dir(ctx)).summary(run_id)
    formatter.print_json(summary.to_dict())


# --- route --------------------------------------------------------------------


@cli.group()
def route() -> None:
    """Routing decisions."""
    pass


@route.command("classify")
@click.option("-t", "--type", "task_type", default="", help="Task type")
@click.option("-f", "--file", "task_file", default="", help="File the task touches")
@click.option("--title", default="", help="Task title")
def route_classify(task_type: str, task_file: str, title: str) -> None:
    """Print the agent role that should handle a task."""
    click.echo(Router().classify({"type": task_type, "file": task_file, "title": title}))


@route.command("next")
@click.argument("agent")
@click.option("--frontend", is_flag=True, help="Project has a frontend")
@click.option("--no-tests", is_flag=True, help="Project has no tests")
def route_next(agent: str, frontend: bool, no_tests: bool) -> None:
    """Print the role that follows AGENT."""
    click.echo(Router.next_agent(agent, has_frontend=frontend, has_tests=not no_tests))


@route.command("failure")
@click.argument("agent")
@click.argument("error")
def route_failure(agent: str, error: str) -> None:
    """Print where a failure of AGENT should go."""
    click.echo(Router.route_on_failure(agent, error))


@route.command("plan")
@click.argument("objective")
@click.option("--root", type=click.Path(exists=True, file_okay=False, path_type=Path), help="Project root to probe")
@click.pass_context
def route_plan(ctx: click.Context, objective: str, root: Path | None) -> None:
    """Plan the phase sequence for an objective."""
    environment = EnvironmentProbe(root).probe()
    _formatter(ctx).print_json(Router.plan_workflow(objective, environment).to_dict())


# --- report -------------------------------------------------------------------


@cli.group()
def report() -> None:
    """Agent self-report handling."""
    pass


@report.command("check")
@click.argument("output_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("-a", "--agent", help="Agent that produced the output")
@click.option("--json", "output_json", is_flag=True, help="JSON output")
@click.option("--log", "log_events", is_flag=True, help="Record the report in the event log")
@click.pass_context
def report_check(
    ctx: click.Context, output_file: Path, agent: str | None, output_json: bool, log_events: bool
) -> None:
    """Evaluate an agent's captured output."""
    formatter = _formatter(ctx)
    events = EventLog(_hive_dir(ctx)) if log_events else None
    protocol = ReportProtocol(ctx.obj["config"].report.pass_threshold, events=events)

    raw = output_file.read_text(errors="replace")
    blocks = protocol.extract_all(raw)
    result = protocol.overall_result_from(blocks, agent=agent)

    details: dict[str, Any] = {
        "result": result,
        "report": blocks.report.raw if blocks.report else None,
        "critique": blocks.critique.raw if blocks.critique else None,
        "validation": protocol.validate(blocks.report).to_dict(),
    }
    if blocks.report is not None:
        details["adjusted_confidence"] = protocol.adjusted_confidence(
            blocks.critique, blocks.report.confidence
        )
        details["should_retry"] = protocol.should_retry(blocks.critique)
    if blocks.critique is not None:
        details["checklist_gaps"] = protocol.checklist_gaps(blocks.critique, agent)

    if output_json:
        formatter.print_json(details)
    else:
        formatter.print_report_check(result, details)


@report.command("checklist")
@click.argument("agent")
@click.option("--prompt", "as_prompt", is_flag=True, help="Print the prompt section instead")
@click.pass_context
def report_checklist(ctx: click.Context, agent: str, as_prompt: bool) -> None:
    """Show the self-critique checklist for a role."""
    protocol = ReportProtocol(ctx.obj["config"].report.pass_threshold)
    if as_prompt:
        click.echo(protocol.critique_prompt(agent))
    else:
        _formatter(ctx).print_json(protocol.checklist(agent))


# --- config -------------------------------------------------------------------


@cli.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show current configuration."""
    _formatter(ctx).print_json(ctx.obj["config"].model_dump(by_alias=True))


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
