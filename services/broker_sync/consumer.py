# Host handshake for reconciliation notifications
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, runtime_checkable

from .models import Order, Position


@runtime_checkable
class ConsumerCapabilities(Protocol):
    """Callbacks an execution host exposes to the engine"""

    def position_update(self, position: Position) -> None: ...

    def order_update(self, order: Order) -> None: ...

    def pl_update(self, symbol: str, pl: float) -> None: ...


def _noop(*args) -> None:
    return None


@dataclass
class CallbackConsumer:
    """Adapts plain callables to ConsumerCapabilities; missing slots are ignored"""
    on_position: Optional[Callable[[Position], None]] = None
    on_order: Optional[Callable[[Order], None]] = None
    on_pl: Optional[Callable[[str, float], None]] = None

    def position_update(self, position: Position) -> None:
        (self.on_position or _noop)(position)

    def order_update(self, order: Order) -> None:
        (self.on_order or _noop)(order)

    def pl_update(self, symbol: str, pl: float) -> None:
        (self.on_pl or _noop)(symbol, pl)


class ConsumerRegistration:
    """Handle returned by ReconciliationEngine.register().

    signal_ready() completes the one-time ready handshake; the engine flushes
    its full current state exactly once and pushes per-entity updates after.
    """

    def __init__(self, consumer: ConsumerCapabilities, on_ready: Callable[["ConsumerRegistration"], None],
                 on_unregister: Callable[["ConsumerRegistration"], None]):
        self.consumer = consumer
        self.ready = False
        self.active = True
        self._on_ready = on_ready
        self._on_unregister = on_unregister

    def signal_ready(self) -> None:
        if self.ready or not self.active:
            return
        self.ready = True
        self._on_ready(self)

    def unregister(self) -> None:
        if not self.active:
            return
        self.active = False
        self._on_unregister(self)
