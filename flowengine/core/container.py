"""Dependency injection container for the engine."""

from dependency_injector import containers, providers

from flowengine.core.config import Settings
from flowengine.core.cache import CacheService
from flowengine.services.events import EventPublisher
from flowengine.services.execution import (
    ExecutionStore,
    RetryController,
    TemplateResolver,
    create_dlq_handler,
)
from flowengine.services.execution.recovery import RecoverySweeper
from flowengine.services.execution.scheduler import WorkflowScheduler
from flowengine.services.node_dispatcher import NodeDispatcher
from flowengine.services.secrets import EnvSecretResolver
from flowengine.services.timers import TimerService


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Cache service (uses Redis when available, memory otherwise)
    cache = providers.Singleton(
        CacheService,
        settings=settings
    )

    store = providers.Singleton(
        ExecutionStore,
        cache=cache,
        settings=settings
    )

    timers = providers.Singleton(
        TimerService,
    )

    secrets = providers.Singleton(
        EnvSecretResolver,
        settings=settings
    )

    publisher = providers.Singleton(
        EventPublisher,
        store=store,
        settings=settings
    )

    templates = providers.Singleton(
        TemplateResolver,
    )

    dispatcher = providers.Singleton(
        NodeDispatcher,
        settings=settings,
        secrets=secrets,
        timers=timers,
        store=store
    )

    retry = providers.Singleton(
        RetryController,
        store=store,
        timers=timers
    )

    dlq = providers.Singleton(
        create_dlq_handler,
        store=store,
        enabled=settings.provided.dlq_enabled
    )

    scheduler = providers.Singleton(
        WorkflowScheduler,
        settings=settings,
        store=store,
        dispatcher=dispatcher,
        retry=retry,
        templates=templates,
        publisher=publisher,
        dlq=dlq
    )

    recovery = providers.Singleton(
        RecoverySweeper,
        store=store,
        scheduler=scheduler,
        sweep_interval=settings.provided.sweep_interval
    )


# Global container instance
container = Container()
