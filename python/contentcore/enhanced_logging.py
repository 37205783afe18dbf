"""Logging helpers for the content orchestrator.

Modules log through the standard library (``logging.getLogger(__name__)``).
configure_logging bridges those records into structlog through
``ProcessorFormatter`` so hosts get JSON or console output with the ids
bound by the executor (``request_id``, ``plan_id``) merged in. Hosts that
run their own logging setup can skip it entirely.
"""

import asyncio
import functools
import logging
import time
from typing import Any, Callable, List, Optional

import structlog

ROOT_LOGGER = "contentcore"


def _renderer(fmt: str):
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=False)


def configure_logging(level: str = "INFO", fmt: str = "text") -> logging.Logger:
    """Install a single structlog-formatted handler on the package logger.

    Calling it again replaces the previous handler instead of stacking.
    """
    shared_processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    final_processors: List[Any] = [structlog.stdlib.ProcessorFormatter.remove_processors_meta]
    if fmt == "json":
        # ConsoleRenderer formats exceptions itself.
        final_processors.append(structlog.processors.format_exc_info)
    final_processors.append(_renderer(fmt))

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors + [structlog.stdlib.ExtraAdder()],
        processors=final_processors,
    )

    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        if getattr(handler, "_contentcore", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler._contentcore = True  # type: ignore[attr-defined]
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))

    structlog.configure(
        processors=[structlog.stdlib.filter_by_level]
        + shared_processors
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    return logger

def track_performance(func: Optional[Callable] = None, *, operation: str = ""):
    """Decorator that logs execution time of a function."""
    def decorator(fn: Callable) -> Callable:
        op = operation or fn.__qualname__

        @functools.wraps(fn)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                return fn(*args, **kwargs)
            finally:
                logging.getLogger(fn.__module__).debug(
                    "%s completed in %.3fs", op, time.perf_counter() - start
                )

        @functools.wraps(fn)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                return await fn(*args, **kwargs)
            finally:
                logging.getLogger(fn.__module__).debug(
                    "%s completed in %.3fs", op, time.perf_counter() - start
                )

        if asyncio.iscoroutinefunction(fn):
            return async_wrapper
        return sync_wrapper

    if func is not None:
        return decorator(func)
    return decorator
