"""
Celery transport for ingestion cycles.

Tasks wrap the same operations as the in-process scheduler. They are not retried by Celery, a failing feed is retried
by its health backoff on later scheduled runs.

Run a worker with ``celery -A rreader.worker worker`` or ``python -m rreader.worker``.
"""
from functools import cache

from celery import Celery
from celery.signals import worker_process_init
from opentelemetry.instrumentation.celery import CeleryInstrumentor
from structlog import get_logger

from .enrich import enrich_article
from .ingestion import Ingestor
from .settings import settings
from .store import Database, FeedRepository
from .utils import setup_logging, setup_tracing

logger = get_logger(__name__)

# Get package name
name, *_ = __package__.split(".")


def create_celery(name: str) -> Celery:

    # Initialize logging and tracing in each worker process
    @worker_process_init.connect(weak=False)
    def init_worker_process(*args, **kwargs):
        setup_logging()
        setup_tracing()
        CeleryInstrumentor().instrument()

    # Create the Celery app
    app = Celery(name)

    conf = {k: v for k, v in settings.celery.model_dump().items() if v is not None}
    app.conf.update(conf)

    return app


app = create_celery(name)


@cache
def get_database() -> Database:
    return Database(settings.DATABASE_URL)


@cache
def get_ingestor() -> Ingestor:
    return Ingestor(get_database())


@app.task(name="rreader.fetch_feed", ignore_result=True)
def fetch_feed(feed_id: int, forced: bool = False) -> str:
    outcome = get_ingestor().run_cycle(feed_id, forced=forced)
    return outcome.value


@app.task(name="rreader.fetch_all_feeds", ignore_result=True)
def fetch_all_feeds() -> int:
    """
    Queue a scheduled fetch for every enabled feed.
    """
    with get_database().session_scope() as session:
        feed_ids = [feed.id for feed in FeedRepository(session).list_feeds()]

    for feed_id in feed_ids:
        fetch_feed.delay(feed_id)

    logger.info("Queued scheduled fetches", feeds=len(feed_ids))
    return len(feed_ids)


@app.task(name="rreader.enrich_article", ignore_result=True)
def enrich_article_task(article_id: int) -> bool:
    return enrich_article(get_database(), article_id)


if __name__ == "__main__":
    logger.info("Starting Celery worker", name=name)

    loglevel = settings.LOGGING_LEVEL.lower()
    app.worker_main(["worker", "--loglevel", loglevel])
