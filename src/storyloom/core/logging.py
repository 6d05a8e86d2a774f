"""Structured logging for storyloom.

Every event is a structlog key/value event. Store modules log through
stdlib ``logging.getLogger(__name__)``; ProcessorFormatter routes those
records through the same chain so both render identically.

Stage executions run on pool threads. The orchestrator wraps each
collaborator call and its completion in ``stage_context``, so anything a
collaborator (or the store beneath it) logs carries the artifact, stage and
attempt it belongs to without passing them around:

    with stage_context("a1", StageName.IMAGES, attempt=2):
        logger.info("image_batch_requested", count=12)
        # {"event": "image_batch_requested", "artifact_id": "a1",
        #  "stage": "images", "attempt": 2, "worker": "storyloom-stage_0", ...}
"""

import logging
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.stdlib import ProcessorFormatter

# Thread name prefix of the orchestrator's stage worker pool
WORKER_THREAD_PREFIX = "storyloom-stage"

# Floor level per third-party logger; DEBUG on these drowns stage events
_NOISY_LOGGERS: dict[str, int] = {
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "dynaconf": logging.WARNING,
}


def _tag_stage_worker(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Name the pool thread for events emitted during a stage execution."""
    name = threading.current_thread().name
    if name.startswith(WORKER_THREAD_PREFIX):
        event_dict.setdefault("worker", name)
    return event_dict


def _strip_formatter_fields(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    # ProcessorFormatter bookkeeping
    event_dict.pop("_record", None)
    event_dict.pop("_from_structlog", None)
    return event_dict


def _pre_chain() -> list[Any]:
    """Processors every event passes, whether from structlog or stdlib."""
    return [
        structlog.contextvars.merge_contextvars,
        _tag_stage_worker,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]


def _renderer_chain(json_output: bool) -> list[Any]:
    if json_output:
        return [_strip_formatter_fields, structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [_strip_formatter_fields, structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]


def configure_logging(*, json_output: bool = False, level: str = "INFO") -> None:
    """Route structlog and stdlib logging to stdout through one processor chain.

    Replaces any handlers already on the root logger, so calling it again
    (as tests do) reconfigures rather than duplicates output.

    Args:
        json_output: JSON lines if True, console rendering otherwise
        level: Root level name (DEBUG, INFO, WARNING, ERROR)
    """
    root_level = logging.getLevelName(level.upper())
    if not isinstance(root_level, int):
        raise ValueError(f"Unknown log level: {level!r}")

    pre_chain = _pre_chain()
    structlog.configure(
        processors=[*pre_chain, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ProcessorFormatter(processors=_renderer_chain(json_output), foreign_pre_chain=pre_chain))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(root_level)

    for name, floor in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(max(root_level, floor))


@contextmanager
def stage_context(artifact_id: str, stage: str, attempt: int) -> Iterator[None]:
    """Bind one stage execution's identity to every event logged inside the block.

    Context variables are per thread, so this must be entered on the thread
    doing the work; the orchestrator enters it on the pool thread.
    """
    with structlog.contextvars.bound_contextvars(artifact_id=artifact_id, stage=str(stage), attempt=attempt):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a bound logger for a module (typically ``__name__``)."""
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger
