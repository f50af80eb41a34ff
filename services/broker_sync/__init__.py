from .client import MetaApiClient
from .consumer import CallbackConsumer, ConsumerCapabilities, ConsumerRegistration
from .engine import ReconciliationEngine
from .models import (
    Brackets,
    Order,
    OrderStatus,
    OrderType,
    PlaceOrderResult,
    Position,
    PreOrder,
    Side,
    SyncState,
)
from .tables import BrokerTables, TableDiff
from .token_cache import TokenCache, settings_token_provider

__all__ = [
    "BrokerTables",
    "Brackets",
    "CallbackConsumer",
    "ConsumerCapabilities",
    "ConsumerRegistration",
    "MetaApiClient",
    "Order",
    "OrderStatus",
    "OrderType",
    "PlaceOrderResult",
    "Position",
    "PreOrder",
    "ReconciliationEngine",
    "Side",
    "SyncState",
    "TableDiff",
    "TokenCache",
    "settings_token_provider",
]
