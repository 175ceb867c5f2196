"""Typer CLI wiring for the storycycle engine."""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

import typer

from storycycle import __version__
from storycycle.config import StorycycleConfig, load_config
from storycycle.domain.cycle_state import CycleStateStore, EpicQueueState, SingleCycleState
from storycycle.domain.steps import build_steps
from storycycle.domain.stories import StoryCatalog
from storycycle.errors import StorycycleError
from storycycle.integrations.agent_channel import ClaudeAgentChannel
from storycycle.integrations.git import GitClient
from storycycle.integrations.story_status import SprintStatusUpdater
from storycycle.logging import configure_logging, get_logger, log_exceptions
from storycycle.orchestration.epic_queue import EpicQueueOrchestrator, eligible_stories
from storycycle.orchestration.single_cycle import SingleCycleOrchestrator
from storycycle.persistence import StateSnapshotWriter

app = typer.Typer(help="Drive stories through the create/implement/review/merge cycle")
dashboard_app = typer.Typer(help="Serve the read-only cycle dashboard")

app.add_typer(dashboard_app, name="dashboard")

logger = get_logger(__name__)


def _version_callback(value: bool) -> None:
    """Print the storycycle package version when requested."""

    if value:
        typer.echo(f"storycycle {__version__}")
        raise typer.Exit()


@app.callback()
def _main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the storycycle version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str = typer.Option(
        "",
        "--log-level",
        help="Set log level (e.g. info, warning, debug). Overrides STORYCYCLE_LOG_LEVEL.",
    ),
) -> None:
    """Global callback to wire shared options like --version."""

    configure_logging(log_level or None)

    return None


def _config_option(help_text: str) -> Optional[Path]:
    """Shared configuration file option declaration for CLI commands."""

    return typer.Option(
        None,
        "--config",
        "-c",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
        help=help_text,
    )


def _load(
    config_path: Optional[Path],
    *,
    reviews: Optional[int] = None,
    project: Optional[Path] = None,
) -> StorycycleConfig:
    overrides: dict = {}
    if reviews is not None:
        overrides.setdefault("cycle", {})["review_rounds"] = reviews
    if project is not None:
        overrides.setdefault("project", {})["path"] = str(project.resolve())
    try:
        return load_config(config_path, overrides=overrides)
    except StorycycleError as exc:
        raise typer.BadParameter(str(exc)) from exc


@dataclass
class _Runtime:
    store: CycleStateStore
    channel: ClaudeAgentChannel
    cycle: SingleCycleOrchestrator
    writer: StateSnapshotWriter


def _build_runtime(config: StorycycleConfig) -> _Runtime:
    store = CycleStateStore()
    writer = StateSnapshotWriter(config.state_path).attach(store)
    channel = ClaudeAgentChannel(config.agent.command, model=config.agent.model)
    cycle = SingleCycleOrchestrator(
        store,
        channel=channel,
        git=GitClient(),
        status_updater=SprintStatusUpdater(),
        project_path=config.project_path,
        stories_dir=config.project.stories_dir,
        profile=config.project.profile,
        review_rounds=config.cycle.review_rounds,
        ai_tool=config.agent.tool,
        base_branch=config.git.base_branch,
        enable_branches=config.git.enable_branches,
        epic_branches=config.git.epic_branches,
        session_settings=config.cycle.session_settings(),
    )
    return _Runtime(store, channel, cycle, writer)


def _on_interrupt(handler: Callable[[], object]) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, handler)
    except (NotImplementedError, RuntimeError):  # pragma: no cover - platform specific
        logger.debug("Signal handlers unavailable; Ctrl-C will abort without cleanup")


def _print_cycle(state: SingleCycleState, cycle: SingleCycleOrchestrator) -> None:
    for index, step in enumerate(cycle.steps):
        status = state.step_statuses[index].value if index < len(state.step_statuses) else "-"
        typer.echo(f"{index + 1:>2}. {step.name:<24} {status}")
    if state.error:
        typer.secho(f"Failed: {state.error}", fg=typer.colors.RED, err=True)


@app.command()
def steps(
    profile: str = typer.Option("bmm", "--profile", "-p", help="Project profile (bmm or bmgd)."),
    reviews: int = typer.Option(1, "--reviews", "-r", help="Number of code review rounds."),
) -> None:
    """Print the step plan for a profile."""

    try:
        plan = build_steps(profile, reviews)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    for index, step in enumerate(plan, start=1):
        detail = step.command or (step.git_action.value if step.git_action else step.type.value)
        typer.echo(f"{index:>2}. {step.id:<24} {step.type.value:<6} {detail}")


@app.command()
def run(
    story_id: str = typer.Argument(..., help="Story key, e.g. 1-2-user-login."),
    config: Optional[Path] = _config_option("Path to the storycycle.yaml file to use."),
    reviews: Optional[int] = typer.Option(None, "--reviews", "-r", help="Code review rounds."),
    project: Optional[Path] = typer.Option(None, "--project", help="Project directory."),
) -> None:
    """Run one story through the full cycle."""

    settings = _load(config, reviews=reviews, project=project)

    async def _drive() -> SingleCycleState:
        runtime = _build_runtime(settings)
        _on_interrupt(runtime.cycle.cancel)
        try:
            with log_exceptions(logger, message=f"Cycle for {story_id} crashed"):
                runtime.cycle.start(story_id)
                state = await runtime.cycle.wait()
        finally:
            await runtime.channel.aclose()
            runtime.writer.detach()
        _print_cycle(state, runtime.cycle)
        return state

    state = asyncio.run(_drive())
    if state.error:
        raise typer.Exit(code=1)
    typer.echo(f"Story {story_id} complete")


@app.command()
def epic(
    epic_id: int = typer.Argument(..., help="Epic number."),
    story_ids: Optional[List[str]] = typer.Argument(
        None, help="Stories to run in order (defaults to the epic's unfinished stories)."
    ),
    config: Optional[Path] = _config_option("Path to the storycycle.yaml file to use."),
    reviews: Optional[int] = typer.Option(None, "--reviews", "-r", help="Code review rounds."),
    limit: Optional[int] = typer.Option(None, "--limit", min=1, help="Run at most N stories."),
    project: Optional[Path] = typer.Option(None, "--project", help="Project directory."),
) -> None:
    """Run the stories of an epic one after another."""

    settings = _load(config, reviews=reviews, project=project)
    queue = list(story_ids or [])
    if not queue:
        queue = eligible_stories(StoryCatalog.load(settings.stories_path), epic_id)
    if limit is not None:
        queue = queue[:limit]
    if not queue:
        typer.secho(f"Epic {epic_id} has no stories left to run.", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(code=1)

    async def _drive() -> EpicQueueState:
        runtime = _build_runtime(settings)
        orchestrator = EpicQueueOrchestrator(
            runtime.store, runtime.cycle, settle_delay=settings.cycle.queue_settle_delay
        )
        _on_interrupt(orchestrator.cancel)
        try:
            with log_exceptions(logger, message=f"Epic {epic_id} crashed"):
                orchestrator.start_epic_cycle(epic_id, queue)
                state = await orchestrator.wait()
                await runtime.cycle.wait()
        finally:
            orchestrator.close()
            await runtime.channel.aclose()
            runtime.writer.detach()
        return state

    state = asyncio.run(_drive())
    for story, status in zip(state.story_queue, state.story_statuses):
        typer.echo(f"{story:<32} {status.value}")
    if state.error:
        typer.secho(f"Epic halted: {state.error}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Epic {epic_id} complete")


@dashboard_app.command("serve")
def dashboard_serve(
    state_dir: Optional[Path] = typer.Argument(None, help="State directory to serve."),
    config: Optional[Path] = _config_option("Path to the storycycle.yaml file to use."),
    host: str = typer.Option("127.0.0.1", help="Host interface to bind the dashboard server"),
    port: int = typer.Option(8050, help="Port to bind the dashboard server"),
    reload: bool = typer.Option(False, help="Enable auto-reload (development only)"),
) -> None:
    """Start the read-only FastAPI dashboard."""

    import uvicorn

    from storycycle.dashboard.server import create_app

    target = state_dir if state_dir is not None else _load(config).state_path
    app_instance = create_app(target)
    typer.echo(f"Serving dashboard from {target} on http://{host}:{port}")
    uvicorn.run(app_instance, host=host, port=port, reload=reload)


def main() -> None:
    """Entry point used by the console script."""

    app()


if __name__ == "__main__":
    main()
