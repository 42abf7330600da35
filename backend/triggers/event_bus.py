"""Event bus listener.

Subscribes to a Redis pub/sub channel on which the CRM publishes
business events (JSON, see ``triggers.events``) and hands each one to
the trigger router.
"""

import asyncio
import json
import logging
from typing import Optional

import redis.asyncio as aioredis

from triggers.events import BusinessEvent
from triggers.router import TriggerRouter

logger = logging.getLogger(__name__)


def decode_message(data) -> Optional[BusinessEvent]:
    """Parse one pub/sub message body into a BusinessEvent, or None if unusable."""
    try:
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        raw = json.loads(data) if data else {}
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.warning("Dropping undecodable event bus message: %s", exc)
        return None
    if not isinstance(raw, dict):
        logger.warning("Dropping event bus message that is not an object")
        return None
    try:
        return BusinessEvent.from_dict(raw)
    except ValueError as exc:
        logger.warning("Dropping malformed event: %s", exc)
        return None


class EventBusListener:
    """Background Redis subscriber feeding the trigger router."""

    def __init__(self, router: TriggerRouter, redis_url: str, channel: str):
        self.router = router
        self.redis_url = redis_url
        self.channel = channel
        self._task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._listen())
            logger.info("Started Redis subscriber for channel: %s", self.channel)
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Stopped Redis subscriber for channel: %s", self.channel)

    async def handle(self, data) -> None:
        """Route one raw message. Routing errors are logged, the listener keeps going."""
        event = decode_message(data)
        if event is None:
            return
        try:
            result = await self.router.on_event(event)
        except Exception as exc:
            logger.error(
                "Failed to route %s event for client %s: %s",
                event.kind, event.client_id, exc, exc_info=True,
            )
            return
        logger.info(
            "Event bus routed %s for client %s: %d enrollment(s)",
            event.kind, event.client_id, len(result.enrollment_ids),
        )

    async def _listen(self) -> None:
        redis_client = aioredis.from_url(self.redis_url)
        pubsub = redis_client.pubsub()
        try:
            await pubsub.subscribe(self.channel)
            logger.info("Listening on Redis channel: %s", self.channel)

            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                await self.handle(message["data"])

        except asyncio.CancelledError:
            logger.info("Redis listener cancelled for channel: %s", self.channel)
            raise
        except aioredis.RedisError as exc:
            logger.error("Redis listener error on %s: %s", self.channel, exc)
        finally:
            await pubsub.aclose()
            await redis_client.aclose()
