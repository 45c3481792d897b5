"""Event Bus - pub/sub for session and run events.

Each SessionRegistry owns one Bus; UIs subscribe to it to observe
transcript and lifecycle changes without polling.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Coroutine
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


@dataclass
class EventDefinition(Generic[T]):
    """Typed event definition.

    Usage:
        SessionCreated = Bus.define("session.created", SessionCreatedProps)
        await bus.publish(SessionCreated, SessionCreatedProps(session_id="..."))
    """

    type: str
    schema: type[T]


# Type for event callbacks
EventCallback = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]


class Bus:
    """Event bus with wildcard subscription support.

    Subscriber failures are logged and never propagate to the publisher,
    so a broken UI callback cannot end a run.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[EventCallback]] = {}

    @staticmethod
    def define(event_type: str, schema: type[T]) -> EventDefinition[T]:
        """Define a typed event.

        Args:
            event_type: Dot-separated event name (e.g., "session.created")
            schema: Pydantic model for event properties

        Returns:
            EventDefinition that can be used with publish/subscribe
        """
        return EventDefinition(type=event_type, schema=schema)

    async def publish(self, event_def: EventDefinition[T], properties: T) -> None:
        """Publish event to all subscribers.

        Args:
            event_def: The event definition (created via Bus.define)
            properties: Event properties (must match the schema)
        """
        payload = {"type": event_def.type, "properties": properties.model_dump(mode="json")}

        # Copies, so callbacks may unsubscribe while being notified
        specific_subs = list(self._subscriptions.get(event_def.type, []))
        wildcard_subs = list(self._subscriptions.get("*", []))

        for callback in specific_subs:
            try:
                await callback(payload)
            except Exception:
                logger.exception(f"Error in subscriber for {event_def.type}")

        for callback in wildcard_subs:
            try:
                await callback(payload)
            except Exception:
                logger.exception(f"Error in wildcard subscriber for {event_def.type}")

    def subscribe(self, event_def: EventDefinition[T], callback: EventCallback) -> Callable[[], None]:
        """Subscribe to a specific event type.

        Returns:
            Unsubscribe function
        """
        return self._subscribe(event_def.type, callback)

    def subscribe_all(self, callback: EventCallback) -> Callable[[], None]:
        """Subscribe to ALL events.

        Returns:
            Unsubscribe function
        """
        return self._subscribe("*", callback)

    def _subscribe(self, key: str, callback: EventCallback) -> Callable[[], None]:
        self._subscriptions.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            if key in self._subscriptions and callback in self._subscriptions[key]:
                self._subscriptions[key].remove(callback)

        return unsubscribe

    async def stream(self) -> AsyncIterator[dict[str, Any]]:
        """Create an async iterator that yields all events.

        Usage:
            async for event in bus.stream():
                render(event)
        """
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

        async def on_event(payload: dict[str, Any]) -> None:
            await queue.put(payload)

        unsubscribe = self.subscribe_all(on_event)

        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()
