"""Command-line entry point for subagent control."""

import asyncio

import typer
from rich.console import Console

from subagent_control.commands import CommandParams, CommandResult, SubagentCommandHandler
from subagent_control.config import Config, get_config, set_config
from subagent_control.exceptions import ConfigurationError
from subagent_control.execution_queue import FollowupQueueManager, QueueSettings, SessionQueues
from subagent_control.gateway import GatewayBackend
from subagent_control.logging import configure_logging, get_logger
from subagent_control.registry import InMemoryRunRegistry
from subagent_control.session import get_session_store

log = get_logger(__name__)

cli = typer.Typer(help="Inspect and steer running subagents")
console = Console()


async def run_command(
    text: str,
    session_key: str,
    config: Config,
    queues: SessionQueues | None = None,
) -> CommandResult | None:
    """Build the handler from config, run one command and release resources.

    Follow-up queues and command lanes live in memory. Without ``queues``
    a fresh set is built for this call, so stop and steer can only clear
    work queued by a host that passes its own long-lived ``SessionQueues``.
    """
    registry_path = config.subagents.registry_path.strip() or None
    registry = InMemoryRunRegistry(
        persistence_path=registry_path,
        archive_after_ms=config.subagents.archive_after_minutes * 60_000,
    )
    swept = registry.sweep_archived()
    if swept:
        log.debug("Dropped archived runs before command", count=swept)
    if queues is None:
        queue_settings = QueueSettings(cap=config.execution_queue.cap, drop_policy=config.execution_queue.drop)
        queues = SessionQueues(followup_queue=FollowupQueueManager(queue_settings))
    backend = GatewayBackend(config.gateway)
    store = get_session_store()
    handler = SubagentCommandHandler(registry, backend, session_store=store, queues=queues, config=config)
    try:
        return await handler.handle(CommandParams(command_body=text, session_key=session_key))
    finally:
        await backend.close()
        await store.close()


@cli.command()
def run(
    text: str = typer.Argument(..., help='Command text, e.g. "/subagents list"'),
    session_key: str = typer.Option("main", "-s", "--session-key", help="Requester session key"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run one subagents command and print the reply.

    Queued follow-ups belong to this process only; stop and steer here
    cannot clear work queued inside a running host.
    """
    if config:
        try:
            set_config(Config.load(config))
        except ConfigurationError as e:
            console.print(str(e), style="red", markup=False, highlight=False)
            raise typer.Exit(code=2)
    cfg = get_config()
    configure_logging("DEBUG" if verbose else None)

    result = asyncio.run(run_command(text, session_key, cfg))
    if result is None:
        console.print("[yellow]Not a subagents command.[/yellow]")
        raise typer.Exit(code=1)
    if result.reply:
        console.print(result.reply, markup=False, highlight=False)


@cli.command()
def version() -> None:
    """Show version information."""
    from subagent_control import __version__

    console.print(f"subagent-control v{__version__}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
