"""CLI entry point for fixflow."""

import asyncio
import signal
import sys
from typing import Any

import click
import structlog

from fixflow.config.settings import FixflowSettings
from fixflow.engine.events import EventBus
from fixflow.engine.orchestrator import WorkflowOrchestrator
from fixflow.engine.session_store import SessionStore
from fixflow.exceptions import ConfigurationError, FixflowError
from fixflow.providers.base import ItemTracker
from fixflow.providers.factory import create_chat_client, create_notifier, create_tracker
from fixflow.providers.local import load_items
from fixflow.strategies.factory import build_strategies
from fixflow.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)


@click.group()
@click.option("--config", default=None, help="Path to YAML configuration file")
@click.option("--log-level", default="INFO", help="Logging level")
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str) -> None:
    """fixflow: automated QA remediation workflows."""
    configure_logging(log_level)

    try:
        settings = FixflowSettings.from_yaml(config) if config else FixflowSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Unexpected error loading configuration: {e}", err=True)
        log.error("config_error_unexpected", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


@cli.command()
@click.option("--items", "items_file", default=None, help="YAML file with items for the in-memory tracker")
@click.option("--drain-timeout", type=float, default=60.0, help="Seconds to wait for running pipelines on shutdown")
@click.option("--stats-interval", type=float, default=300.0, help="Seconds between statistics log entries")
@click.pass_context
def run(ctx: click.Context, items_file: str | None, drain_timeout: float, stats_interval: float) -> None:
    """Run the orchestrator until interrupted."""
    try:
        settings = ctx.obj["settings"]
        asyncio.run(_run_service(settings, items_file, drain_timeout, stats_interval))
    except FixflowError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("run_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error("run_unexpected", exc_info=True)
        sys.exit(1)


@cli.command("process-item")
@click.argument("item_id")
@click.option("--items", "items_file", default=None, help="YAML file with items for the in-memory tracker")
@click.pass_context
def process_item(ctx: click.Context, item_id: str, items_file: str | None) -> None:
    """Process a single item through the pipeline."""
    try:
        settings = ctx.obj["settings"]
        asyncio.run(_process_single_item(settings, item_id, items_file))
    except FixflowError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("process_item_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error("process_item_unexpected", exc_info=True)
        sys.exit(1)


@cli.command("check-config")
@click.pass_context
def check_config(ctx: click.Context) -> None:
    """Validate configuration and print a summary."""
    settings: FixflowSettings = ctx.obj["settings"]
    workflow = settings.workflow

    click.echo("Configuration OK\n")
    click.echo(f"Tracker:   {settings.tracker.provider_type}")
    if settings.tracker.provider_type == "notion":
        click.echo(f"  Database: {settings.tracker.database_id}")
    click.echo(f"Notifier:  {settings.notifier.provider_type} ({settings.notifier.channel})")
    if settings.notifier.provider_type == "slack" and settings.notifier.bot_token is None:
        click.echo("  Warning: no bot token, Slack notifications are disabled")
    click.echo(f"Model:     {settings.agent.model} @ {settings.agent.base_url}")
    click.echo(f"Classifier: {workflow.classifier}")
    click.echo(f"Poll interval: {workflow.poll_interval}s, session timeout: {workflow.session_timeout}s")
    click.echo(f"Max concurrent sessions: {workflow.max_concurrent_sessions}")
    click.echo("Phases:")
    for phase, config in workflow.phases.items():
        click.echo(f"  {phase.value}: timeout {config.timeout}s, {config.max_attempts} attempts")
    if settings.project:
        click.echo(f"Project:   {settings.project.name} ({settings.project.id})")


async def _create_orchestrator(
    settings: FixflowSettings,
    items_file: str | None = None,
) -> tuple[WorkflowOrchestrator, list[Any]]:
    """Create the orchestrator and the resources that must be closed afterwards.

    Args:
        settings: Fixflow settings
        items_file: Optional items file for the in-memory tracker

    Returns:
        The orchestrator and the list of resources to close
    """
    if items_file and settings.tracker.provider_type != "memory":
        raise ConfigurationError("--items can only be used with the in-memory tracker")

    items = load_items(items_file) if items_file else []
    tracker = create_tracker(settings, items)
    notifier = create_notifier(settings)
    chat = create_chat_client(settings)
    events = EventBus()

    resources: list[Any] = [tracker, notifier, chat]

    await tracker.connect()
    try:
        await chat.connect()
    except Exception:
        await _close_resources(resources)
        raise

    orchestrator = WorkflowOrchestrator(
        tracker=tracker,
        notifier=notifier,
        strategies=build_strategies(settings, chat),
        workflow=settings.workflow,
        sessions=SessionStore(default_timeout=settings.workflow.session_timeout, events=events),
        events=events,
        project=settings.project,
    )
    return orchestrator, resources


async def _close_resources(resources: list[Any]) -> None:
    for resource in resources:
        try:
            if isinstance(resource, ItemTracker):
                await resource.disconnect()
            elif hasattr(resource, "close"):
                await resource.close()
        except Exception as e:
            log.warning("resource_close_failed", resource=type(resource).__name__, error=str(e))


async def _run_service(
    settings: FixflowSettings,
    items_file: str | None,
    drain_timeout: float,
    stats_interval: float,
) -> None:
    """Run the orchestrator until SIGINT or SIGTERM.

    Args:
        settings: Fixflow settings
        items_file: Optional items file for the in-memory tracker
        drain_timeout: Seconds to wait for running pipelines on shutdown
        stats_interval: Seconds between statistics log entries
    """
    orchestrator, resources = await _create_orchestrator(settings, items_file)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            log.debug("signal_handler_unsupported", signal=sig.name)

    click.echo(f"fixflow running (polling every {settings.workflow.poll_interval}s)")
    try:
        await orchestrator.start()
        while not stop_requested.is_set():
            try:
                await asyncio.wait_for(stop_requested.wait(), timeout=stats_interval)
            except TimeoutError:
                log.info("orchestrator_stats", **orchestrator.get_stats())
    finally:
        click.echo("Shutting down...")
        await orchestrator.stop(drain_timeout=drain_timeout)
        await _close_resources(resources)


async def _process_single_item(settings: FixflowSettings, item_id: str, items_file: str | None) -> None:
    """Process one item.

    Args:
        settings: Fixflow settings
        item_id: Tracker identifier of the item
        items_file: Optional items file for the in-memory tracker
    """
    log.info("processing_single_item", item_id=item_id)
    orchestrator, resources = await _create_orchestrator(settings, items_file)

    try:
        item = await orchestrator.tracker.get_item(item_id)
        if item is None:
            raise FixflowError(f"Item not found: {item_id}")

        session = await orchestrator.process_item(item)
        decision = session.context.decision
        if decision is not None and not decision.should_act:
            click.echo(f"Item {item_id} is not actionable: {decision.reason}")
        else:
            published = session.context.published
            click.echo(f"Item {item_id} processed successfully")
            if published is not None:
                click.echo(f"Change bundle: {published.url}")
    finally:
        orchestrator.sessions.shutdown()
        await _close_resources(resources)


if __name__ == "__main__":
    cli()
