"""
Process wiring for the scheduling and execution services

Entry points (HTTP server, CLI, rq jobs) build one Runtime and pass its
parts explicitly; nothing here is held at module level.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import redis
from rq import Queue

from config.redis import create_redis_connection
from config.settings import Settings, get_settings
from followup.call_executor import FollowupExecutor
from followup.client_registry import ProviderClientRegistry
from followup.status_tracker import StatusTracker
from scheduling.config_store import ConfigStore
from scheduling.dispatch import DispatchQueueGateway, RQDispatchGateway
from scheduling.redis_store import RedisSchedulingStore
from scheduling.scheduler import AutoScheduler
from scheduling.store import SchedulingStore

logger = logging.getLogger("runtime")


@dataclass
class Runtime:
    """The wired services of one process"""
    settings: Settings
    store: SchedulingStore
    dispatch: DispatchQueueGateway
    registry: ProviderClientRegistry
    config_store: ConfigStore
    scheduler: AutoScheduler
    executor: FollowupExecutor
    tracker: StatusTracker


def assemble_runtime(
    settings: Settings,
    store: SchedulingStore,
    dispatch: DispatchQueueGateway,
    registry: ProviderClientRegistry
) -> Runtime:
    """Wire services on top of already-built infrastructure"""
    config_store = ConfigStore(store)
    scheduler = AutoScheduler(
        store,
        dispatch,
        config_store=config_store,
        max_retries=settings.retry_max_attempts,
        default_timezone=settings.default_clinic_timezone,
    )
    executor = FollowupExecutor(
        store,
        registry,
        dispatch,
        base_minutes=settings.retry_base_minutes,
    )
    tracker = StatusTracker(store, executor.outcomes)
    return Runtime(
        settings=settings,
        store=store,
        dispatch=dispatch,
        registry=registry,
        config_store=config_store,
        scheduler=scheduler,
        executor=executor,
        tracker=tracker,
    )


def build_runtime(
    settings: Optional[Settings] = None,
    redis_client: Optional[redis.Redis] = None,
    queue_connection: Optional[redis.Redis] = None,
    registry: Optional[ProviderClientRegistry] = None
) -> Runtime:
    """
    Build the production runtime on Redis and rq

    Args:
        settings: Settings (read from the environment if omitted)
        redis_client: Store connection, decode_responses=True
        queue_connection: rq connection, decode_responses=False
        registry: Provider registry (built from settings if omitted)
    """
    settings = settings or get_settings()
    redis_client = redis_client or create_redis_connection()
    queue_connection = queue_connection or create_redis_connection(decode_responses=False)

    queue = Queue(settings.dispatch_queue_name, connection=queue_connection)
    return assemble_runtime(
        settings,
        RedisSchedulingStore(redis_client),
        RQDispatchGateway(queue),
        registry or ProviderClientRegistry.from_settings(settings),
    )
