import pytest

from contentcore.pipeline.executor import StageBackends
from stubs import StubGenerator, StubValidator, make_request, make_settings


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def request_x():
    return make_request()


@pytest.fixture
def backends():
    return StageBackends(
        generator=StubGenerator("Hello"),
        validator=StubValidator([0.9]),
    )
