"""Celery tasks driving the workflow engine.

``dispatch_due_enrollments`` runs every SCHEDULER_INTERVAL_SECONDS via
Celery beat and executes one dispatcher tick. Overlapping ticks (a slow
tick still running when beat fires again, or several workers) are safe:
enrollments are claimed with a lease before a step runs.

``route_business_event`` lets producers enqueue events instead of
calling the HTTP endpoint.
"""

import asyncio
import logging

from worker.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    name="worker.tasks.dispatcher.dispatch_due_enrollments",
    bind=True,
    max_retries=0,
    queue="dispatcher",
)
def dispatch_due_enrollments(self):
    """Run one dispatcher tick over all due enrollments."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_tick())
        if result.get("due"):
            logger.info(f"[dispatcher] Tick done: {result}")
        return result
    except Exception as exc:
        logger.error(f"[dispatcher] Tick failed: {exc}", exc_info=True)
        raise
    finally:
        loop.close()


async def _tick() -> dict:
    from app.config import get_settings
    from db.worker_session import worker_session_factory
    from integrations.capabilities import get_capabilities
    from workflow.dispatcher import Dispatcher
    from workflow.retry_strategies import RetryStrategy

    settings = get_settings()
    async with worker_session_factory() as session_factory:
        dispatcher = Dispatcher(
            session_factory,
            get_capabilities(),
            max_workers=settings.SCHEDULER_MAX_WORKERS,
            batch_size=settings.SCHEDULER_BATCH_SIZE,
            lease_seconds=settings.CLAIM_LEASE_SECONDS,
            step_timeout=settings.STEP_TIMEOUT_SECONDS,
            retry_strategy=RetryStrategy.fixed(
                max_attempts=settings.STEP_MAX_ATTEMPTS,
                delay=settings.STEP_RETRY_DELAY_SECONDS,
            ),
        )
        result = await dispatcher.tick()
    return result.to_dict()


@celery_app.task(
    name="worker.tasks.dispatcher.route_business_event",
    bind=True,
    max_retries=3,
    default_retry_delay=10,
    queue="triggers",
)
def route_business_event(self, event: dict):
    """Route one business event (wire dict, see triggers.events).

    Args:
        event: Event dict as published by the CRM
    """
    from triggers.events import BusinessEvent

    try:
        business_event = BusinessEvent.from_dict(event)
    except ValueError as exc:
        logger.warning(f"[router] Dropping malformed event: {exc}")
        return {"routed": False, "error": str(exc)}

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(_route(business_event))
    except Exception as exc:
        logger.error(f"[router] Routing failed: {exc}", exc_info=True)
        raise self.retry(exc=exc)
    finally:
        loop.close()


async def _route(event) -> dict:
    from db.worker_session import worker_session_factory
    from triggers.router import TriggerRouter

    async with worker_session_factory() as session_factory:
        result = await TriggerRouter(session_factory).on_event(event)
    return {"routed": True, **result.to_dict()}
