"""
Redis message bus.

Request/reply and one-way events on top of Redis lists:
- a request `{id, pattern, data, reply_to}` is pushed onto `<prefix>:rpc:<pattern>`
- the server pops it, runs the handler and pushes `{id, response}` or
  `{id, err: {status, message}}` onto `reply_to`
- an event is the same envelope without `reply_to`; nobody waits for it

Lists (rather than pub/sub) mean each request is consumed by exactly one
service instance.
"""
import asyncio
import json
import logging
import math
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import uuid4

import redis.asyncio as redis
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
from pydantic import ValidationError as PayloadError
from redis.exceptions import RedisError

from .errors import OrderServiceError, UpstreamUnavailable

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[Any]]


class MessageRouter:
    """Maps message patterns to async handlers."""

    def __init__(self):
        self.message_handlers: dict[str, tuple[Handler, type[BaseModel] | None]] = {}
        self.event_handlers: dict[str, tuple[Handler, type[BaseModel] | None]] = {}

    def message(self, pattern: str, payload: type[BaseModel] | None = None):
        """Register a request/reply handler. The payload is validated into `payload` first."""
        def decorator(func: Handler) -> Handler:
            self.message_handlers[pattern] = (func, payload)
            return func
        return decorator

    def event(self, pattern: str, payload: type[BaseModel] | None = None):
        """Register a one-way event handler."""
        def decorator(func: Handler) -> Handler:
            self.event_handlers[pattern] = (func, payload)
            return func
        return decorator

    @property
    def patterns(self) -> list[str]:
        return [*self.message_handlers, *self.event_handlers]

    async def dispatch(self, envelope: dict) -> dict | None:
        """Run the handler for an envelope. Returns the reply, or None for events."""
        pattern = envelope.get("pattern")
        message_id = envelope.get("id")
        data = envelope.get("data")

        if pattern in self.event_handlers:
            handler, payload = self.event_handlers[pattern]
            try:
                await handler(payload.model_validate(data) if payload else data)
            except Exception as e:
                # Events have no caller to report to
                logger.error(f"Event {pattern} ({message_id}) failed: {e}", exc_info=True)
            return None

        if pattern not in self.message_handlers:
            logger.warning(f"No handler registered for pattern {pattern!r}")
            return {"id": message_id, "err": {"status": 404, "message": f"No handler for pattern {pattern}"}}

        handler, payload = self.message_handlers[pattern]
        try:
            response = await handler(payload.model_validate(data) if payload else data)
        except PayloadError as e:
            logger.warning(f"Invalid payload for {pattern}: {e}")
            return {"id": message_id, "err": {"status": 400, "message": f"Invalid payload for {pattern}: {e}"}}
        except OrderServiceError as e:
            return {"id": message_id, "err": e.to_payload()}
        except Exception as e:
            logger.error(f"Unhandled error in {pattern} ({message_id}): {e}", exc_info=True)
            return {"id": message_id, "err": {"status": 500, "message": "Internal server error"}}

        return {"id": message_id, "response": jsonable_encoder(response)}


class RedisBus:
    def __init__(
        self,
        url: str,
        prefix: str = "bus",
        timeout: float = 5.0,
        reply_ttl: int | None = None,
        retry_delay: float = 5.0,
        client: redis.Redis | None = None,
    ):
        self.redis = client or redis.from_url(url)
        self.prefix = prefix
        self.timeout = timeout
        # Replies expire after the RPC timeout
        self.reply_ttl = reply_ttl or math.ceil(timeout)
        self.retry_delay = retry_delay
        self._tasks: set[asyncio.Task] = set()

    def queue_key(self, pattern: str) -> str:
        return f"{self.prefix}:rpc:{pattern}"

    async def request(self, pattern: str, data: Any, timeout: float | None = None) -> Any:
        """Send a request and wait for its reply. Any failure is UpstreamUnavailable."""
        timeout = timeout or self.timeout
        message_id = uuid4().hex
        reply_to = f"{self.prefix}:reply:{message_id}"
        envelope = {
            "id": message_id,
            "pattern": pattern,
            "data": jsonable_encoder(data),
            "reply_to": reply_to,
        }

        try:
            await self.redis.rpush(self.queue_key(pattern), json.dumps(envelope))
            result = await self.redis.blpop([reply_to], timeout=timeout)
        except RedisError as e:
            logger.error(f"Message bus error calling {pattern}: {e}")
            raise UpstreamUnavailable(f"Message bus error calling {pattern}: {e}") from e

        if result is None:
            logger.error(f"Timed out after {timeout}s waiting for {pattern} ({message_id})")
            raise UpstreamUnavailable(f"Timed out waiting for {pattern}")

        _, raw = result
        try:
            reply = json.loads(raw)
        except json.JSONDecodeError as e:
            raise UpstreamUnavailable(f"Malformed reply from {pattern}") from e

        error = reply.get("err")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise UpstreamUnavailable(f"{pattern} failed: {message}")
        return reply.get("response")

    async def emit(self, pattern: str, data: Any) -> None:
        envelope = {"id": uuid4().hex, "pattern": pattern, "data": jsonable_encoder(data)}
        await self.redis.rpush(self.queue_key(pattern), json.dumps(envelope))

    async def serve(self, router: MessageRouter) -> None:
        """Consume the router's queues until cancelled."""
        keys = [self.queue_key(pattern) for pattern in router.patterns]
        logger.info(f"Listening on {len(keys)} queues with prefix {self.prefix!r}")

        while True:
            try:
                result = await self.redis.blpop(keys, timeout=1)
                if result is None:
                    continue
                _, raw = result
                task = asyncio.create_task(self._handle(router, raw))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            except Exception as e:
                logger.error(f"Redis connection error: {e}", exc_info=True)
                await asyncio.sleep(self.retry_delay)

    async def _handle(self, router: MessageRouter, raw: bytes) -> None:
        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Dropping malformed message: {raw[:200]!r}")
            return

        reply = await router.dispatch(envelope)
        reply_to = envelope.get("reply_to")
        if reply is None or not reply_to:
            return

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.rpush(reply_to, json.dumps(reply))
                pipe.expire(reply_to, self.reply_ttl)
                await pipe.execute()
        except RedisError as e:
            logger.error(f"Could not reply to {envelope.get('pattern')} ({envelope.get('id')}): {e}")

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.redis.aclose()
