"""In-process domain events.

Turn completion and party rotation depend on each other logically; the
lifecycle code publishes events here and the party code subscribes at app
start, so neither imports the other.
"""

from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Type

from flask import current_app

from chainplay import db

EXTENSION_KEY = 'chainplay.events'


@dataclass(frozen=True)
class TurnCompleted:
    turn_id: str
    game_id: str
    player_id: str
    order_index: int
    season_id: Optional[str] = None


@dataclass(frozen=True)
class GameCompleted:
    game_id: str
    season_id: Optional[str] = None


class EventBus:
    """Synchronous subscriber registry.

    Subscribers run after the publishing transaction has committed. A
    failing subscriber is logged and its session work rolled back; it never
    propagates to the publisher.
    """

    def __init__(self):
        self._subscribers: Dict[Type, List[Callable]] = defaultdict(list)

    @classmethod
    def install(cls, app) -> 'EventBus':
        if EXTENSION_KEY in app.extensions:
            raise RuntimeError('EventBus already installed on this app')
        bus = cls()
        app.extensions[EXTENSION_KEY] = bus
        return bus

    def subscribe(self, event_type: Type, handler: Callable) -> None:
        self._subscribers[event_type].append(handler)

    def publish(self, event) -> None:
        for handler in list(self._subscribers.get(type(event), [])):
            try:
                handler(event)
            except Exception as exc:
                db.session.rollback()
                current_app.logger.error(
                    f"[event-failed] event={type(event).__name__} handler={handler.__name__} error={exc!r}"
                )


def publish(event) -> None:
    bus = current_app.extensions.get(EXTENSION_KEY)
    if bus is None:
        current_app.logger.warning(f"[event-dropped] event={type(event).__name__} no bus installed")
        return
    bus.publish(event)
