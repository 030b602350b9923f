"""Command-line entry point for rigfleet."""

from __future__ import annotations

from types import SimpleNamespace
from typing import List, Optional

import typer

from . import __version__
from . import log as rigfleet_log
from .commands.dispatch import dispatch as dispatch_cmd
from .commands.done import done as done_cmd
from .commands.queue import list_entries as queue_list_cmd
from .commands.queue import next_entry as queue_next_cmd
from .commands.server import run as server_run_cmd
from .commands.server import status as server_status_cmd
from .commands.up import up as up_cmd
from .commands.worker import list_workers as worker_list_cmd
from .commands.worker import nuke as worker_nuke_cmd
from .commands.worker import stale as worker_stale_cmd

app = typer.Typer(
    help="Dispatch work to AI coding workers across rigs and manage their lifecycle.",
    no_args_is_help=True,
    add_completion=False,
)
worker_app = typer.Typer(help="Inspect and tear down workers.", no_args_is_help=True)
queue_app = typer.Typer(help="Inspect the merge queue.", no_args_is_help=True)
server_app = typer.Typer(help="Use the shared database server.", no_args_is_help=True)
app.add_typer(worker_app, name="worker")
app.add_typer(queue_app, name="queue")
app.add_typer(server_app, name="server")


def _validate_log_level(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if value.strip().lower() not in rigfleet_log.LEVEL_NAMES:
        raise typer.BadParameter(f"expected one of: {', '.join(rigfleet_log.LEVEL_NAMES)}")
    return value


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def main_callback(
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="log verbosity (trace, debug, info, success, warning, error)",
        callback=_validate_log_level,
    ),
    no_color: bool = typer.Option(False, "--no-color", help="disable coloured output"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="show the version and exit",
    ),
) -> None:
    if log_level is not None:
        rigfleet_log.set_level(log_level)
    if no_color:
        rigfleet_log.set_no_color(True)


@app.command("dispatch")
def dispatch(
    items: List[str] = typer.Argument(..., help="work item(s) or a formula, then the target"),
    force: bool = typer.Option(False, "--force", help="re-dispatch assigned work; skip rig checks"),
    create: bool = typer.Option(False, "--create", help="spawn a named worker that does not exist"),
    account: Optional[str] = typer.Option(None, "--account", help="agent account for the session"),
    agent: Optional[str] = typer.Option(None, "--agent", help="agent command override"),
    formula: Optional[str] = typer.Option(None, "--formula", help="formula to bond onto the item"),
    hook_raw: bool = typer.Option(False, "--hook-raw", help="hook the item without a formula"),
    args_text: Optional[str] = typer.Option(None, "--args", help="instructions attached to the work"),
    no_convoy: bool = typer.Option(False, "--no-convoy", help="skip auto-convoy creation"),
    no_merge: bool = typer.Option(False, "--no-merge", help="leave the result on its branch for review"),
    no_boot: bool = typer.Option(False, "--no-boot", help="do not start the rig's witness/refinery"),
    max_concurrent: Optional[int] = typer.Option(
        None, "--max-concurrent", min=1, help="parallel spawns for batch dispatch"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="print the planned steps; write nothing"),
    actor: Optional[str] = typer.Option(None, "--actor", help="act as this agent id"),
) -> None:
    """Dispatch work items (or a formula) to a target."""
    dispatch_cmd(
        SimpleNamespace(
            items=items,
            force=force,
            create=create,
            account=account,
            agent=agent,
            formula=formula,
            hook_raw=hook_raw,
            args=args_text,
            no_convoy=no_convoy,
            no_merge=no_merge,
            no_boot=no_boot,
            max_concurrent=max_concurrent,
            dry_run=dry_run,
            actor=actor,
        )
    )


@app.command("done")
def done(
    exit_type: str = typer.Option(
        "COMPLETED", "--exit", help="COMPLETED, ESCALATED, DEFERRED or PHASE_COMPLETE"
    ),
    issue: Optional[str] = typer.Option(None, "--issue", help="source issue (default: from branch)"),
    gate: Optional[str] = typer.Option(None, "--gate", help="gate to wait on (PHASE_COMPLETE)"),
    priority: Optional[int] = typer.Option(
        None, "--priority", min=0, max=4, help="merge request priority override"
    ),
    actor: Optional[str] = typer.Option(None, "--actor", help="act as this agent id"),
) -> None:
    """Signal completion of hooked work and end this worker session."""
    done_cmd(
        SimpleNamespace(exit_type=exit_type, issue=issue, gate=gate, priority=priority, actor=actor)
    )


@app.command("up")
def up(
    rigs: List[str] = typer.Option([], "--rig", help="limit to these rigs (repeatable)"),
) -> None:
    """Start each rig's witness and refinery sessions."""
    up_cmd(SimpleNamespace(rigs=rigs))


@worker_app.command("nuke")
def worker_nuke(
    workers: List[str] = typer.Argument(None, help="workers as <rig>/<name>"),
    all_rig: Optional[str] = typer.Option(None, "--all", help="nuke every worker in this rig"),
    force: bool = typer.Option(False, "--force", help="discard uncommitted work and open MRs"),
    yes: bool = typer.Option(False, "--yes", "-y", help="skip the --force confirmation"),
    dry_run: bool = typer.Option(False, "--dry-run", help="show what would be destroyed"),
) -> None:
    """Destroy workers: session, sandbox, branches and identity."""
    worker_nuke_cmd(
        SimpleNamespace(workers=workers or [], all=all_rig, force=force, yes=yes, dry_run=dry_run)
    )


@worker_app.command("stale")
def worker_stale(
    rig: str = typer.Argument(..., help="rig name"),
    threshold: Optional[int] = typer.Option(
        None, "--threshold", min=1, help="commits behind the default branch"
    ),
    cleanup: bool = typer.Option(False, "--cleanup", help="nuke stale workers (never forced)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="with --cleanup, only list them"),
) -> None:
    """Detect stale workers in a rig."""
    worker_stale_cmd(
        SimpleNamespace(rig=rig, threshold=threshold, cleanup=cleanup, dry_run=dry_run)
    )


@worker_app.command("list")
def worker_list(rig: str = typer.Argument(..., help="rig name")) -> None:
    """List workers in a rig with their lifecycle state."""
    worker_list_cmd(SimpleNamespace(rig=rig))


@queue_app.command("next")
def queue_next(
    rig: str = typer.Argument(..., help="rig name"),
    strategy: str = typer.Option("priority", "--strategy", help="priority or fifo"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="print only the id"),
    json_output: bool = typer.Option(False, "--json", help="print JSON"),
) -> None:
    """Show the next merge request to process."""
    queue_next_cmd(SimpleNamespace(rig=rig, strategy=strategy, quiet=quiet, json=json_output))


@queue_app.command("list")
def queue_list(
    rig: str = typer.Argument(..., help="rig name"),
    strategy: str = typer.Option("priority", "--strategy", help="priority or fifo"),
    json_output: bool = typer.Option(False, "--json", help="print JSON"),
) -> None:
    """List ready merge requests in dispatch order."""
    queue_list_cmd(SimpleNamespace(rig=rig, strategy=strategy, json=json_output))


@server_app.command("status")
def server_status() -> None:
    """Show database server state."""
    server_status_cmd(SimpleNamespace())


@server_app.command("run")
def server_run(
    command: List[str] = typer.Argument(..., help="command to run under the lease"),
    ephemeral: bool = typer.Option(
        False, "--ephemeral", help="use a temporary data dir removed by the last holder"
    ),
) -> None:
    """Run a command while holding a shared lease on the database server."""
    server_run_cmd(SimpleNamespace(command=command, ephemeral=ephemeral))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
