"""Structured logging configuration for Segmentry.

Stdlib loggers render through structlog. While a validation job runs, every
event also carries the job id and, per video, the video and lecture ids, so one
broken video can be followed through probes, mirroring and notifications.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog

# Third-party loggers capped at WARNING
NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "botocore", "boto3", "urllib3.connectionpool")


def setup_logging(log_level: str = "INFO", json_output: bool = False) -> None:
    """Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: Emit JSON lines instead of colored console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging_from_config(config: dict) -> None:
    setup_logging(config.get("log_level", "INFO"), json_output=config.get("log_json", False))


@contextmanager
def job_context(job_id: str) -> Iterator[None]:
    """Tag every log event inside the block with ``job_id``."""
    with structlog.contextvars.bound_contextvars(job_id=job_id):
        yield


@contextmanager
def video_context(video_id: str, lecture_id: Optional[str] = None) -> Iterator[None]:
    """Tag every log event inside the block with the video being validated."""
    fields = {"video_id": video_id}
    if lecture_id:
        fields["lecture_id"] = lecture_id
    with structlog.contextvars.bound_contextvars(**fields):
        yield
