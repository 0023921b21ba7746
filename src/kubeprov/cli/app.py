# src/kubeprov/cli/app.py
from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import typer

from kubeprov.cluster.proxy import ClusterProxy
from kubeprov.config.loader import load_definition
from kubeprov.config.settings import SetupOptions, kubeprov_home
from kubeprov.errors import KubeprovError
from kubeprov.hosting.base import StopMode
from kubeprov.hosting.registry import get_hosting_manager
from kubeprov.logging.log import init_logging
from kubeprov.observers.console import ConsoleObserver
from kubeprov.observers.dispatcher import EventBus
from kubeprov.observers.jsonfile import JsonFileObserver
from kubeprov.observers.logger import LoggerObserver
from kubeprov.setup.controller import SetupResult
from kubeprov.setup.kube import setup_cluster
from kubeprov.setup.prepare import prepare_cluster
from kubeprov.setup.remove import remove_cluster


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="kubeprov: idempotent cluster provisioning")

ConfigArg = typer.Argument(..., help="Cluster definition YAML")
DebugOpt = typer.Option(False, "--debug", help="Verbose console logging")


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _session(config: Path, debug: bool, *, observe: bool = True) -> Tuple[ClusterProxy, str]:
    logger, run_id, log_path = init_logging(verbose=debug)

    observers: List = [LoggerObserver(logger), JsonFileObserver(kubeprov_home() / "logs" / f"{run_id}.jsonl")]
    if observe:
        observers.insert(0, ConsoleObserver())
    bus = EventBus(observers=observers)

    definition = load_definition(config)
    cluster = ClusterProxy(definition, get_hosting_manager(definition), bus=bus)

    typer.echo(f"  Cluster  : {definition.name} ({definition.hosting.environment.value})")
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Log file : {log_path}")
    return cluster, run_id


def _run(action: Callable[[], None]) -> None:
    try:
        action()
    except KubeprovError as exc:
        _fail(str(exc))


def _with_cluster(config: Path, debug: bool, action: Callable[[ClusterProxy], None], *, observe: bool = True) -> None:
    def _call():
        cluster, _ = _session(config, debug, observe=observe)
        try:
            action(cluster)
        finally:
            cluster.dispose()

    _run(_call)


def _report(result: SetupResult) -> None:
    if result.success:
        typer.secho(f"{result.title}: OK", fg=typer.colors.GREEN, bold=True)
        return
    typer.secho(f"{result.title}: FAILED", fg=typer.colors.RED, bold=True, err=True)
    for failure in result.failures:
        typer.echo(f"  - {failure.describe()}", err=True)
    raise typer.Exit(code=1)


def _options(max_parallel: Optional[int], debug: bool) -> SetupOptions:
    options = SetupOptions(debug=debug)
    if max_parallel:
        options = replace(options, max_parallel=max_parallel)
    return options


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def validate(config: Path = ConfigArg):
    """Check a cluster definition against its hosting environment."""

    def _validate():
        definition = load_definition(config)
        get_hosting_manager(definition)
        typer.secho(
            f"{definition.name}: {len(definition.nodes)} nodes, "
            f"{definition.hosting.environment.value} hosting: valid",
            fg=typer.colors.GREEN,
        )

    _run(_validate)


@app.command()
def prepare(
    config: Path = ConfigArg,
    max_parallel: Optional[int] = typer.Option(None, "--max-parallel", min=1),
    debug: bool = DebugOpt,
):
    """Provision infrastructure and prepare every node."""

    _with_cluster(config, debug, lambda cluster: _report(prepare_cluster(cluster, _options(max_parallel, debug))))


@app.command()
def setup(
    config: Path = ConfigArg,
    max_parallel: Optional[int] = typer.Option(None, "--max-parallel", min=1),
    debug: bool = DebugOpt,
):
    """Bootstrap Kubernetes on a prepared cluster."""

    _with_cluster(config, debug, lambda cluster: _report(setup_cluster(cluster, _options(max_parallel, debug))))


@app.command()
def status(config: Path = ConfigArg, debug: bool = DebugOpt):
    """Show infrastructure, health and lock state."""

    def _status(cluster: ClusterProxy):
        st = cluster.get_status()
        locked = {True: "yes", False: "no", None: "unknown"}[st.is_locked]
        typer.echo(f"  State    : {st.state.value}")
        typer.echo(f"  Infra    : {st.infra.value}")
        typer.echo(f"  Locked   : {locked}")
        if st.summary:
            typer.echo(f"  Summary  : {st.summary}")

    _with_cluster(config, debug, _status, observe=False)


@app.command()
def start(config: Path = ConfigArg, debug: bool = DebugOpt):
    _with_cluster(config, debug, lambda cluster: cluster.start())


@app.command()
def stop(
    config: Path = ConfigArg,
    mode: StopMode = typer.Option(StopMode.GRACEFUL, "--mode"),
    debug: bool = DebugOpt,
):
    """Stop (or pause) the cluster's machines; refused while locked."""
    _with_cluster(config, debug, lambda cluster: cluster.stop(mode))


@app.command()
def lock(config: Path = ConfigArg, debug: bool = DebugOpt):
    """Block destructive operations on the cluster."""
    _with_cluster(config, debug, lambda cluster: cluster.lock())


@app.command()
def unlock(config: Path = ConfigArg, debug: bool = DebugOpt):
    _with_cluster(config, debug, lambda cluster: cluster.unlock())


@app.command()
def reset(
    config: Path = ConfigArg,
    keep: List[str] = typer.Option([], "--keep", help="Namespace to keep (repeatable)"),
    yes: bool = typer.Option(False, "--yes", "-y"),
    debug: bool = DebugOpt,
):
    """Delete all user namespaces; refused while locked."""
    if not yes:
        typer.confirm("This deletes every non-system namespace. Continue?", abort=True)

    def _reset(cluster: ClusterProxy):
        deleted = cluster.reset(keep)
        typer.echo(f"Deleted {len(deleted)} namespace(s): {', '.join(deleted) or '-'}")

    _with_cluster(config, debug, _reset)


@app.command()
def remove(
    config: Path = ConfigArg,
    yes: bool = typer.Option(False, "--yes", "-y"),
    debug: bool = DebugOpt,
):
    """Tear down the cluster and forget its login; refused while locked."""
    if not yes:
        typer.confirm("This permanently removes the cluster. Continue?", abort=True)

    _with_cluster(config, debug, lambda cluster: _report(remove_cluster(cluster)))


if __name__ == "__main__":
    app()
