import os
from collections import Counter
from concurrent.futures import wait
from datetime import datetime, timezone

import rich_click as click
from opentelemetry import trace
from rich.console import Console
from rich.table import Table
from structlog import get_logger

from rreader.abc import CycleOutcome
from rreader.discovery import FeedDiscoverer
from rreader.enrich import enrich_feed
from rreader.errors import FeedError
from rreader.extractor import ContentExtractor
from rreader.feedproxy import FeedproxyResolver
from rreader.health import FeedHealth
from rreader.ingestion import IngestionScheduler, Ingestor
from rreader.settings import settings
from rreader.store import Database, FeedRepository

from .utils import setup_logging, setup_tracing

logger = get_logger(__package__)
tracer = trace.get_tracer(__package__ or "__main__")

console = Console()


@click.group()
@click.version_option()
@click.option("--debug", help="Enable or disable debug mode.", default=bool(os.getenv("DEBUG", False)))
@click.option("--database-url", help="SQLAlchemy database URL.", default=settings.DATABASE_URL, show_default=True)
@click.pass_context
def cli(ctx: click.Context, debug: bool, database_url: str):
    if debug:
        os.environ["DEBUG"] = "1"

    setup_logging(debug=debug)
    setup_tracing()

    ctx.obj = Database(database_url)
    ctx.call_on_close(ctx.obj.dispose)


def _outcome_style(outcome: CycleOutcome) -> str:
    match outcome:
        case CycleOutcome.UPDATED:
            return "green"
        case CycleOutcome.FAILED | CycleOutcome.MISSING:
            return "red"
        case _:
            return "yellow"


def _print_outcome(feed_id: int, outcome: CycleOutcome):
    console.print(f"Feed {feed_id}: [{_outcome_style(outcome)}]{outcome.value}[/]")


@cli.command()
@click.pass_obj
def init_db(db: Database):
    """
    Create the database tables.
    """
    db.create_all()
    console.print("Database initialized")


@cli.command()
@click.argument("url")
@click.option("--user-id", type=int, default=1, show_default=True, help="Owner of the subscription.")
@click.option("--title", help="Custom title for the feed.")
@click.pass_obj
def subscribe(db: Database, url: str, user_id: int, title: str | None):
    """
    Subscribe to the feed behind URL and fetch it.
    """
    with IngestionScheduler(Ingestor(db)) as scheduler:
        try:
            feed, future = scheduler.subscribe(url, user_id, title=title)
        except FeedError as e:
            raise click.ClickException(str(e)) from e

        console.print(f"Subscribed to [bold]{feed.title or feed.feed_url}[/] as feed {feed.id}")
        _print_outcome(feed.id, future.result())


@cli.command()
@click.argument("feed_id", type=int)
@click.option("--force", is_flag=True, help="Fetch even when the feed is backing off.")
@click.pass_obj
@tracer.start_as_current_span("cli.fetch")
def fetch(db: Database, feed_id: int, force: bool):
    """
    Run one ingestion cycle for a feed.
    """
    outcome = Ingestor(db).run_cycle(feed_id, forced=force)
    _print_outcome(feed_id, outcome)


@cli.command()
@click.pass_obj
@tracer.start_as_current_span("cli.fetch_all")
def fetch_all(db: Database):
    """
    Fetch every feed that is not disabled.
    """
    with IngestionScheduler(Ingestor(db)) as scheduler:
        futures = scheduler.fetch_all()
        wait(futures)

    counts = Counter(f.result().value for f in futures)
    console.print(", ".join(f"{outcome}: {count}" for outcome, count in sorted(counts.items())) or "No feeds")


@cli.command()
@click.argument("feed_id", type=int)
@click.pass_obj
def reenable(db: Database, feed_id: int):
    """
    Reset the health of a feed and fetch it.
    """
    with IngestionScheduler(Ingestor(db)) as scheduler:
        future = scheduler.reenable(feed_id)
        if future is None:
            raise click.ClickException(f"Feed {feed_id} not found")
        _print_outcome(feed_id, future.result())


@cli.command()
@click.argument("url")
def discover(url: str):
    """
    Show the feed an URL resolves to.
    """
    try:
        resolved = FeedDiscoverer().discover(url)
    except FeedError as e:
        raise click.ClickException(str(e)) from e

    console.print(f"Feed: {resolved.feed_url}")
    if not resolved.direct:
        console.print(f"Found on: {resolved.site_url}")


@cli.command()
@click.argument("url")
def extract(url: str):
    """
    Extract the readable content of an article page.
    """
    extracted = ContentExtractor().extract(url)
    if extracted is None:
        raise click.ClickException(f"No content could be extracted from {url}")

    if extracted.from_archive:
        console.print("[yellow]Extracted from an archived copy[/]")
    if extracted.paywalled:
        console.print("[yellow]Page is marked as paywalled[/]")
    if extracted.excerpt:
        console.print(f"[bold]{extracted.excerpt}[/]\n")
    console.print(extracted.content, markup=False)


@cli.command()
@click.argument("feed_id", type=int)
@click.option("--limit", type=int, help="Maximum number of articles to enrich.")
@click.pass_obj
def enrich(db: Database, feed_id: int, limit: int | None):
    """
    Extract content for the articles of a feed that have none.
    """
    updated = enrich_feed(db, feed_id, limit=limit)
    console.print(f"Enriched {updated} articles")


@cli.command()
@click.option("--dry-run", is_flag=True, help="Show what would be resolved without updating.")
@click.option("--limit", type=int, help="Maximum number of articles to look at.")
@click.pass_obj
def resolve_feedproxy(db: Database, dry_run: bool, limit: int | None):
    """
    Resolve FeedBurner proxy links to the original article links.
    """
    results = FeedproxyResolver(db).resolve(dry_run=dry_run, limit=limit)

    for item in results:
        if item.new_url:
            console.print(f"[green]FOUND[/] {item.title}\n       {item.old_url}\n     → {item.new_url}")
        else:
            console.print(f"[red]MISS [/] {item.title}")

    resolved = sum(1 for item in results if item.new_url)
    prefix = "[DRY RUN] " if dry_run else ""
    console.print(f"{prefix}Resolved: {resolved}/{len(results)}")


@cli.command()
@click.argument("feed_id", type=int, required=False)
@click.pass_obj
def health(db: Database, feed_id: int | None):
    """
    Show the fetch health of feeds.
    """
    now = datetime.now(timezone.utc)

    table = Table("ID", "Feed", "State", "Failures", "Last error", "Skipped now")

    with db.session_scope() as session:
        repo = FeedRepository(session)
        if feed_id is not None:
            feed = repo.get_feed_by_id(feed_id)
            if feed is None:
                raise click.ClickException(f"Feed {feed_id} not found")
            feeds = [feed]
        else:
            feeds = repo.list_feeds(include_disabled=True)

        for feed in feeds:
            state = FeedHealth.from_feed(feed)
            table.add_row(
                str(feed.id),
                feed.title or feed.feed_url,
                state.state.value,
                str(state.consecutive_failures),
                state.last_error or "",
                "yes" if state.disabled or state.should_skip(now) else "no",
            )

    console.print(table)


if __name__ == "__main__":
    cli()
