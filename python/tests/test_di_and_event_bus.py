"""Tests for the DI container (contentcore/di_container.py) and event bus (contentcore/event_bus.py)."""

import json
import logging
import random

import pytest
import structlog

from contentcore.di_container import ContentCoreContainer
from contentcore.enhanced_logging import ROOT_LOGGER, configure_logging, track_performance
from contentcore.event_bus import InMemoryEventBus, emit
from contentcore.interfaces.event_bus import EventType
from contentcore.pipeline.executor import StageBackends
from stubs import StubGenerator, StubValidator, failing_generator, make_request, make_settings


@pytest.fixture
def container():
    backends = StageBackends(generator=StubGenerator("Hi"), validator=StubValidator([0.9]))
    return ContentCoreContainer(make_settings(), backends, rng=random.Random(3))


# --- DI Container ---


def test_services_are_shared(container):
    assert container.router is container.router
    assert container.router.pipeline is container.pipeline
    assert container.pipeline.recorder is container.recorder
    assert container.pipeline.event_bus is container.event_bus
    assert container.router.selector is container.selector


def test_event_bus_lazy_init(container):
    assert isinstance(container.event_bus, InMemoryEventBus)


def test_injected_event_bus_is_used():
    bus = InMemoryEventBus()
    c = ContentCoreContainer(make_settings(), StageBackends(generator=StubGenerator()), event_bus=bus)
    assert c.pipeline.event_bus is bus


async def test_container_end_to_end(container):
    result = await container.router.process(make_request(), user_id="u1")
    assert result.success
    assert container.health()["status"] == "healthy"
    assert container.recorder.averages()["count"] == 1


# --- InMemoryEventBus ---


async def test_event_bus_publish_subscribe():
    bus = InMemoryEventBus()
    received = []

    async def handler(data):
        received.append(data)

    await bus.subscribe(EventType.PLAN_STARTED, handler)
    await bus.publish(EventType.PLAN_STARTED, {"plan_id": "p1"}, source="test")
    assert received == [{"plan_id": "p1", "_source": "test"}]


async def test_event_bus_unsubscribe():
    bus = InMemoryEventBus()
    received = []

    async def handler(data):
        received.append(data)

    sub_id = await bus.subscribe(EventType.PLAN_COMPLETED, handler)
    await bus.unsubscribe(sub_id)
    await bus.publish(EventType.PLAN_COMPLETED, {"plan_id": "p1"})
    assert received == []
    assert bus.subscriber_count(EventType.PLAN_COMPLETED) == 0


async def test_event_bus_sync_handler_and_failure_isolation():
    bus = InMemoryEventBus()
    received = []

    def bad(data):
        raise ValueError("boom")

    def good(data):
        received.append(data)

    await bus.subscribe(EventType.STAGE_SETTLED, bad)
    await bus.subscribe(EventType.STAGE_SETTLED, good)
    await bus.publish(EventType.STAGE_SETTLED, {"stage": "generate"})
    assert received == [{"stage": "generate"}]


async def test_emit_without_bus_is_noop():
    await emit(None, EventType.PLAN_FAILED, {"plan_id": "p1"})


# --- Logging ---


@pytest.fixture
def package_logger():
    logger = logging.getLogger(ROOT_LOGGER)
    yield logger
    for handler in [h for h in logger.handlers if getattr(h, "_contentcore", False)]:
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    structlog.reset_defaults()


def test_configure_logging_replaces_handler(package_logger):
    configure_logging("DEBUG", "json")
    configure_logging("INFO", "text")
    ours = [h for h in package_logger.handlers if getattr(h, "_contentcore", False)]
    assert len(ours) == 1
    assert isinstance(ours[0].formatter, structlog.stdlib.ProcessorFormatter)
    assert package_logger.level == logging.INFO


def test_json_output_carries_bound_ids_and_extra(package_logger, capsys):
    configure_logging("INFO", "json")
    with structlog.contextvars.bound_contextvars(request_id="r-1", plan_id="plan-1"):
        logging.getLogger("contentcore.pipeline").info("stage %s done", "generate", extra={"attempts": 2})
    line = capsys.readouterr().err.strip().splitlines()[-1]
    payload = json.loads(line)
    assert payload["event"] == "stage generate done"
    assert payload["level"] == "info"
    assert payload["logger"] == "contentcore.pipeline"
    assert payload["request_id"] == "r-1"
    assert payload["plan_id"] == "plan-1"
    assert payload["attempts"] == 2
    assert "timestamp" in payload


async def test_executor_binds_request_ids(package_logger, capsys):
    configure_logging("INFO", "json")
    backends = StageBackends(generator=failing_generator(), fallback_generator=StubGenerator("Hi"))
    container = ContentCoreContainer(make_settings(), backends)
    request = make_request()
    await container.pipeline.compose(request)
    lines = [json.loads(line) for line in capsys.readouterr().err.strip().splitlines()]
    executor_lines = [
        p for p in lines if p["logger"] in ("contentcore.pipeline.executor", "contentcore.pipeline.fallback")
    ]
    assert executor_lines
    assert all(p["request_id"] == request.id for p in executor_lines)


async def test_track_performance_wraps_async(caplog):
    @track_performance(operation="timed")
    async def timed():
        return 42

    with caplog.at_level(logging.DEBUG):
        assert await timed() == 42
    assert "timed completed" in caplog.text
