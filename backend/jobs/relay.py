# jobs/relay.py — Redis pub/sub channel from job workers to the chat gateway
import json
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger("collabute.jobs.relay")

NOTIFICATION_CHANNEL = "collabute:realtime:notifications"

Deliver = Callable[[str, Dict[str, Any]], Awaitable[Any]]


class NotificationRelay:
    """Carries real-time notifications across processes via Redis pub/sub"""

    def __init__(self, redis: Redis, channel: str = NOTIFICATION_CHANNEL):
        self.redis = redis
        self.channel = channel

    async def publish(self, user_id: str, notification: Dict[str, Any]) -> int:
        """Publish for `user_id`; returns the number of subscribed gateways"""
        message = json.dumps({"user_id": user_id, "notification": notification}, default=str)
        return await self.redis.publish(self.channel, message)

    async def listen(self, deliver: Deliver, stop: asyncio.Event) -> None:
        """Forward relayed notifications to `deliver` until `stop` is set"""
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.channel)
        logger.info(f"Listening for real-time notifications on {self.channel}")
        try:
            while not stop.is_set():
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                try:
                    envelope = json.loads(message["data"])
                    await deliver(envelope["user_id"], envelope["notification"])
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(f"Dropping malformed relay message: {e}")
        finally:
            await pubsub.aclose()

    async def run(self, deliver: Deliver, stop: asyncio.Event, retry_interval: float = 5.0) -> None:
        """`listen`, resubscribing after Redis connection failures"""
        while not stop.is_set():
            try:
                await self.listen(deliver, stop)
            except RedisError as e:
                logger.warning(f"Relay subscription lost ({e}); retrying in {retry_interval}s")
                try:
                    await asyncio.wait_for(stop.wait(), timeout=retry_interval)
                except asyncio.TimeoutError:
                    pass
