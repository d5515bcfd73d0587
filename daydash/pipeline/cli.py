"""CLI interface for the daydash news pipeline.

Usage:
    daydash run
    daydash poll-once
    daydash status
    daydash recent -n 10
    daydash report -n 20
    daydash cursor
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from daydash.config import PipelineConfig, load_config
from daydash.errors import ConfigurationError, StoreError
from daydash.pipeline.orchestrator import NewsOrchestrator
from daydash.pipeline.report import get_news_report
from daydash.storage.db import StoryStore

console = Console()


def run_async(coro):
    """Run an async function in a fresh event loop."""
    return asyncio.run(coro)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def _fmt_time(ts: int) -> str:
    if not ts:
        return "?"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


@click.group()
@click.option("--config", "config_path", default=None, help="Config file path (default: config.yaml)")
@click.option("--db", default=None, help="Database path (overrides config)")
@click.option("--log-level", default=None, help="Log level (overrides config)")
@click.pass_context
def cli(ctx, config_path: Optional[str], db: Optional[str], log_level: Optional[str]):
    """Daydash news pipeline CLI."""
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)
    if db:
        config.db_path = db
    if log_level:
        config.log_level = log_level
    setup_logging(config.log_level)
    ctx.obj["config"] = config


def _pipeline_config(ctx) -> PipelineConfig:
    config: PipelineConfig = ctx.obj["config"]
    try:
        return config.validate()
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)


@cli.command()
@click.pass_context
def run(ctx):
    """Run the background poller until interrupted."""
    config = _pipeline_config(ctx)

    async def _run():
        orchestrator = NewsOrchestrator(config)
        await orchestrator.initialize()
        try:
            console.print(
                f"[green]Polling every {config.poll_interval:.0f}s[/green] "
                f"({config.workers} workers, db={config.db_path}). Ctrl-C to stop."
            )
            await orchestrator.run()
        finally:
            await orchestrator.close()

    run_async(_run())


@cli.command("poll-once")
@click.pass_context
def poll_once(ctx):
    """Run a single poll cycle and wait for every tweet to be processed."""
    config = _pipeline_config(ctx)

    async def _run():
        orchestrator = NewsOrchestrator(config)
        await orchestrator.initialize()
        try:
            with console.status("[bold green]Polling..."):
                result = await orchestrator.run_once()
            summary = orchestrator.dispatcher.summary
        finally:
            await orchestrator.close()

        if not result.success:
            console.print(f"[red]Tick failed:[/red] {result.error}")
            sys.exit(1)

        table = Table(title="Poll Results")
        table.add_column("Outcome", style="cyan")
        table.add_column("Count", justify="right")
        for outcome, count in summary.as_dict().items():
            table.add_row(outcome, str(count))
        table.add_section()
        table.add_row("[bold]fetched", f"[bold]{result.fetched}")
        console.print(f"Cursor before poll: {result.cursor or '<empty>'}")
        console.print(table)

    run_async(_run())


async def _open_store(ctx) -> StoryStore:
    store = StoryStore(ctx.obj["config"].db_path)
    await store.initialize()
    return store


@cli.command()
@click.pass_context
def status(ctx):
    """Show story store status."""

    async def _run():
        store = await _open_store(ctx)
        try:
            stats = await store.get_stats()
        finally:
            await store.close()

        console.print("\n[bold]Story Store Status[/bold]")
        console.print(f"  Path: {ctx.obj['config'].db_path}")
        console.print(f"  Size: {stats['db_size_bytes'] / 1024:.1f} KB")
        console.print(f"  Stories: {stats['total_stories']}")
        console.print(f"  Updates: {stats['total_updates']}")
        console.print(f"  Stories with media: {stats['stories_with_media']}")
        console.print(f"  Cursor: {stats['cursor'] or '<empty>'}")

    _run_store_command(_run())


@cli.command()
@click.option("--limit", "-n", default=None, type=int, help="Max stories")
@click.pass_context
def recent(ctx, limit: Optional[int]):
    """List the most recently updated stories."""

    async def _run():
        store = await _open_store(ctx)
        try:
            stories = await store.recent_stories(limit or ctx.obj["config"].story_limit)
        finally:
            await store.close()

        if not stories:
            console.print("[yellow]No stories yet.[/yellow] Run poll-once first.")
            return

        table = Table(show_header=True)
        table.add_column("#", style="dim", width=4)
        table.add_column("Latest", max_width=60)
        table.add_column("Updates", justify="right")
        table.add_column("Media", width=5)
        table.add_column("Updated", width=16)
        table.add_column("URL", style="cyan", max_width=50)

        for i, story in enumerate(stories, 1):
            latest = story.latest_update
            table.add_row(
                str(i),
                (latest.text if latest else "")[:60],
                str(len(story.updates)),
                "[green]yes" if latest and latest.media_data else "[red]no",
                _fmt_time(story.updated_at),
                story.url,
            )
        console.print(table)

    _run_store_command(_run())


@cli.command()
@click.option("--limit", "-n", default=None, type=int, help="Max stories")
@click.pass_context
def report(ctx, limit: Optional[int]):
    """Print the news report JSON served to dashboard clients."""

    async def _run():
        store = await _open_store(ctx)
        try:
            news = await get_news_report(store, limit or ctx.obj["config"].story_limit)
        finally:
            await store.close()
        click.echo(json.dumps(news.to_dict(), indent=2))

    _run_store_command(_run())


@cli.command()
@click.pass_context
def cursor(ctx):
    """Print the highest stored tweet id (the next poll's since_id)."""

    async def _run():
        store = await _open_store(ctx)
        try:
            click.echo(await store.cursor_max())
        finally:
            await store.close()

    _run_store_command(_run())


def _run_store_command(coro) -> None:
    try:
        run_async(coro)
    except StoreError as e:
        console.print(f"[red]Store error:[/red] {e}")
        sys.exit(1)


def main():
    cli()


if __name__ == "__main__":
    main()
