"""Shared fixtures: in-memory persistence, recording timers, a wired scheduler."""

import random

import pytest

from flowengine.core.cache import CacheService
from flowengine.core.config import Settings
from flowengine.services.events import EventPublisher
from flowengine.services.execution import ExecutionStore, RetryController, TemplateResolver
from flowengine.services.execution.scheduler import WorkflowScheduler
from flowengine.services.node_dispatcher import NodeDispatcher
from flowengine.services.secrets import StaticSecretResolver
from tests.builders import FakeTimerService


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        redis_enabled=False,
        max_parallel_nodes=4,
        node_timeout=5.0,
        lease_ttl=30,
        lease_renew_interval=10.0,
        dlq_enabled=False,
    )


@pytest.fixture
def cache(settings):
    return CacheService(settings)


@pytest.fixture
def store(cache, settings):
    return ExecutionStore(cache, settings)


@pytest.fixture
def timers():
    return FakeTimerService()


@pytest.fixture
def secrets():
    return StaticSecretResolver({"API_TOKEN": "s3cr3t", "OPENAI_API_KEY": "sk-test"})


@pytest.fixture
def publisher(store, settings):
    return EventPublisher(store, settings)


@pytest.fixture
def dispatcher(settings, secrets, timers, store):
    return NodeDispatcher(settings, secrets, timers, store)


@pytest.fixture
def retry(store, timers):
    return RetryController(store, timers, rng=random.Random(7))


@pytest.fixture
def scheduler(settings, store, dispatcher, retry, publisher):
    return WorkflowScheduler(settings, store, dispatcher, retry, TemplateResolver(), publisher,
                             owner_id="test-owner")
