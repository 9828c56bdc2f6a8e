import logging
import os
from importlib import import_module
from importlib.metadata import PackageNotFoundError, metadata
from urllib.parse import urlparse

import structlog
from opentelemetry import trace
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from url_normalize import url_normalize

from .settings import settings

logger = structlog.get_logger(__name__)

EXTRA_INSTRUMENTOR = [
    ("opentelemetry.instrumentation.urllib3", "URLLib3Instrumentor"),
    ("opentelemetry.instrumentation.requests", "RequestsInstrumentor"),
    ("opentelemetry.instrumentation.sqlalchemy", "SQLAlchemyInstrumentor"),
]
""" List of extra instrumentors to use, if installed. """


def clean_url(url: str) -> str:
    """
    Clean the URL to a normalized form.

    :param url: URL to clean
    """
    return url_normalize(url)


def favicon_url(url: str | None) -> str | None:
    """
    Guess the favicon location of the site hosting `url`.

    Only a placeholder: the actual icon is resolved elsewhere.
    """
    if not url:
        return None

    parts = urlparse(url)
    if not parts.hostname:
        return None

    return f"{parts.scheme or 'https'}://{parts.hostname}/favicon.ico"


def add_open_telemetry_spans(_, __, event_dict):
    span = trace.get_current_span()
    if not span.is_recording():
        event_dict["span"] = None
        return event_dict

    ctx = span.get_span_context()
    parent = getattr(span, "parent", None)

    event_dict["span"] = {
        "span_id": hex(ctx.span_id),
        "trace_id": hex(ctx.trace_id),
        "parent_span_id": None if not parent else hex(parent.span_id),
    }

    return event_dict


def setup_logging(debug=settings.DEBUG):

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_open_telemetry_spans,  # Add OpenTelemetry context to logs
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        pass_foreign_args=True,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer()
        ],
    )
    handler = logging.StreamHandler()

    # Use OUR `ProcessorFormatter` to format all `logging` entries.
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(settings.LOGGING_LEVEL)

    # trafilatura is chatty on pages it cannot handle
    logging.getLogger("trafilatura").setLevel(logging.WARNING)

    LoggingInstrumentor().instrument()

    if debug:
        logging.getLogger(__package__).setLevel(logging.DEBUG)


def setup_tracing(name: str = __package__):
    """
    Setup OpenTelemetry tracing.

    Tracing is enabled by default, but can be disabled by setting `RREADER_TRACING_ENABLED` to `False`.
    """

    if not settings.TRACING_ENABLED:
        logger.debug("Tracing is disabled")
        return None

    try:
        version = metadata(name)["version"]
    except PackageNotFoundError:
        version = "0.0.0"

    resource = Resource.create({
        SERVICE_NAME: name,
        SERVICE_VERSION: version,
    })

    trace_provider = TracerProvider(resource=resource)

    # Setup exporter to send traces to otel endpoint
    if otel_endpoint := os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"):
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

        logger.debug("Setting tracing target to %s", otel_endpoint)
        exporter = OTLPSpanExporter(endpoint=otel_endpoint)
        trace_provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer(name, version, tracer_provider=trace_provider)

    for instrumentor_pkg, cls in EXTRA_INSTRUMENTOR:
        try:
            mod = import_module(instrumentor_pkg)
        except ImportError as e:
            logger.debug("Instrumentor %s.%s not found: %s", instrumentor_pkg, cls, e)
            continue
        instrumentor_cls = getattr(mod, cls)
        instrumentor_cls().instrument()

    return tracer
