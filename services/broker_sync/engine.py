# Broker-state reconciliation engine
import asyncio
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from core.config.settings import Settings
from core.logging import get_error_logger_safe, get_trading_logger_safe
from core.utils.exceptions import (
    ConfigurationError,
    EntityNotFoundError,
    MutationError,
    RecordValidationError,
    SnapshotAuthError,
    SnapshotFetchError,
    create_error_context,
)

from .brackets import build_brackets, bracket_kind, is_bracket, parse_bracket_id
from .client import MetaApiClient
from .consumer import ConsumerCapabilities, ConsumerRegistration
from .mapping import extract_order_id, map_order, map_position
from .models import (
    BracketKind,
    Brackets,
    MutationResult,
    Order,
    OrderStatus,
    OrderType,
    PlaceOrderResult,
    Position,
    PreOrder,
    SyncState,
)
from .tables import BrokerTables, TableDiff
from .token_cache import TokenCache, TokenProvider


class ReconciliationEngine:
    """
    Keeps a consumer's view of positions and orders in step with periodic
    account snapshots.

    Local mutations patch the tables optimistically and open a suppression
    window during which poll results are discarded, so a stale snapshot
    cannot revert the patch. One engine owns its tables, token cache and
    tasks; nothing is shared between instances.
    """

    def __init__(self, settings: Settings, client: MetaApiClient,
                 token_provider: Optional[TokenProvider] = None,
                 account_id: Optional[str] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self.sync = settings.sync
        self.client = client
        self.logger = get_trading_logger_safe("broker_sync")
        self.error_logger = get_error_logger_safe("broker_sync_errors")

        self._clock = clock
        self._tokens: Optional[TokenCache] = TokenCache(token_provider) if token_provider else None
        self._account_id: Optional[str] = account_id or settings.metaapi.account_id
        self._tables = BrokerTables()
        self._state = SyncState.IDLE
        self._last_local_action_time: Optional[float] = None
        self._suppress_until = 0.0

        self._registrations: List[ConsumerRegistration] = []
        self._running = False
        self._poll_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    # --- lifecycle -------------------------------------------------------

    @property
    def account_id(self) -> Optional[str]:
        return self._account_id

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_local_action_time(self) -> Optional[float]:
        return self._last_local_action_time

    async def start(self) -> None:
        """Fetch once immediately, then poll at the configured interval."""
        if self._running:
            return
        self._require_ready_for_io()

        self._running = True
        self.logger.info("🚀 Starting reconciliation engine",
                         account_id=self._account_id,
                         poll_interval=self.sync.poll_interval_seconds)
        await self._safe_cycle()
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        if not self._running and not self._tasks and self._poll_task is None:
            return
        self._running = False

        tasks = list(self._tasks)
        if self._poll_task is not None:
            tasks.append(self._poll_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._poll_task = None
        self._tasks.clear()
        self.logger.info("🛑 Reconciliation engine stopped", account_id=self._account_id)

    async def set_account_id(self, account_id: Optional[str]) -> None:
        """Switch accounts; tables and token belong to the previous account and are dropped."""
        if account_id == self._account_id:
            return

        self.logger.info("Switching account", previous=self._account_id, account_id=account_id)
        self._account_id = account_id
        self._tables.clear()
        if self._tokens is not None:
            self._tokens.invalidate()

        if not account_id:
            return
        if self._running:
            await self._safe_cycle()
        elif self._tokens is not None:
            await self.start()

    def _require_ready_for_io(self) -> None:
        if not self._account_id:
            raise ConfigurationError("No account ID", config_field="metaapi.account_id")
        if self._tokens is None:
            raise ConfigurationError("No token provider configured", config_field="token_provider")

    # --- consumer handshake ---------------------------------------------

    def register(self, consumer: ConsumerCapabilities) -> ConsumerRegistration:
        registration = ConsumerRegistration(consumer, self._flush_to, self._unregister)
        self._registrations.append(registration)
        return registration

    def _unregister(self, registration: ConsumerRegistration) -> None:
        if registration in self._registrations:
            self._registrations.remove(registration)

    def _ready_consumers(self) -> List[ConsumerCapabilities]:
        return [r.consumer for r in self._registrations if r.ready and r.active]

    def _flush_to(self, registration: ConsumerRegistration) -> None:
        """One-time full-state push when a consumer signals ready."""
        consumers = [registration.consumer]
        for bracket in self._tables.brackets:
            self._emit_order(bracket, consumers)
        for order in self._tables.orders:
            self._emit_order(order, consumers)
        for position in self._tables.positions:
            self._emit_position(position, consumers)
        self.logger.info("Flushed state to consumer",
                         positions=len(self._tables.positions),
                         orders=len(self._tables.orders),
                         brackets=len(self._tables.brackets))

    def _call_consumer(self, consumer: ConsumerCapabilities, method: str, *args: Any) -> None:
        try:
            getattr(consumer, method)(*args)
        except Exception as e:
            self.error_logger.error("Consumer callback failed", callback=method, error=str(e))

    def _emit_order(self, order: Order, consumers: Optional[List[ConsumerCapabilities]] = None) -> None:
        for consumer in consumers if consumers is not None else self._ready_consumers():
            self._call_consumer(consumer, "order_update", order.model_copy())

    def _emit_position(self, position: Position,
                       consumers: Optional[List[ConsumerCapabilities]] = None,
                       with_pl: bool = True) -> None:
        for consumer in consumers if consumers is not None else self._ready_consumers():
            self._call_consumer(consumer, "position_update", position.model_copy())
            if with_pl:
                self._call_consumer(consumer, "pl_update", position.symbol, position.profit)

    def _emit_canceled(self, order: Order, zero_qty: bool = True) -> None:
        update: Dict[str, Any] = {"status": OrderStatus.CANCELED}
        if zero_qty:
            update["qty"] = 0
        self._emit_order(order.model_copy(update=update))

    def _emit_closed(self, position: Position) -> None:
        self._emit_position(position.model_copy(update={"volume_lots": 0}), with_pl=False)

    def _notify_diff(self, diff: TableDiff) -> None:
        for bracket in diff.removed_brackets:
            self._emit_canceled(bracket)
        for bracket in diff.upserted_brackets:
            self._emit_order(bracket)
        for order in diff.removed_orders:
            self._emit_canceled(order, zero_qty=False)
        for order in diff.upserted_orders:
            self._emit_order(order)
        for position in diff.removed_positions:
            self._emit_closed(position)
        for position in diff.upserted_positions:
            self._emit_position(position)

    # --- queries ---------------------------------------------------------

    def positions(self) -> List[Position]:
        return self._tables.positions

    def orders(self) -> List[Order]:
        """Regular pending orders; brackets are reachable through get_brackets()."""
        return self._tables.orders

    def get_brackets(self, parent_id: str) -> List[Order]:
        return self._tables.brackets_for(parent_id)

    def position(self, position_id: str) -> Optional[Position]:
        return self._tables.position(position_id)

    def order(self, order_id: str) -> Optional[Order]:
        return self._tables.order(order_id)

    # --- reconciliation --------------------------------------------------

    def in_grace_window(self) -> bool:
        return self._clock() < self._suppress_until

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.sync.poll_interval_seconds)
            except asyncio.CancelledError:
                break
            # A tick never waits on a slow cycle; the FETCHING guard drops the overlap
            self._spawn(self._safe_cycle())

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _safe_cycle(self) -> bool:
        try:
            return await self.run_cycle()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.error_logger.error("Reconciliation cycle failed",
                                    **create_error_context(e, "run_cycle", {"account_id": self._account_id}))
            return False

    async def run_cycle(self) -> bool:
        """One fetch/apply pass. Returns True when a snapshot was applied."""
        if self._state == SyncState.FETCHING:
            self.logger.debug("Previous cycle still fetching, skipping tick")
            return False
        if self.in_grace_window():
            self.logger.debug("Inside local action grace window, skipping cycle")
            return False
        account_id = self._account_id
        if not account_id or self._tokens is None:
            return False

        self._state = SyncState.FETCHING
        try:
            token = await self._tokens.get(account_id)
            if not token:
                self.logger.warning("No access token available, skipping cycle", account_id=account_id)
                return False

            try:
                raw_positions, raw_orders = await asyncio.gather(
                    self.client.get_positions(account_id, token),
                    self.client.get_pending_orders(account_id, token),
                )
            except SnapshotAuthError:
                self.logger.warning("Snapshot fetch unauthorized, token invalidated", account_id=account_id)
                self._tokens.invalidate()
                return False
            except SnapshotFetchError as e:
                self.logger.warning("Snapshot fetch failed, keeping previous state",
                                    account_id=account_id, error=e.message, status=e.status)
                return False

            if account_id != self._account_id:
                self.logger.debug("Account changed during fetch, discarding snapshot", account_id=account_id)
                return False
            if self.in_grace_window():
                self.logger.debug("Local action during fetch, discarding snapshot", account_id=account_id)
                return False

            self._apply_snapshot(raw_positions, raw_orders)
            return True
        finally:
            self._state = SyncState.IDLE

    def sync_from_live_state(self, open_positions: Iterable[Mapping[str, Any]],
                             pending_orders: Iterable[Mapping[str, Any]]) -> bool:
        """Apply a snapshot obtained elsewhere, honouring the grace window."""
        if self.in_grace_window():
            self.logger.debug("Inside local action grace window, ignoring live state")
            return False
        self._apply_snapshot(list(open_positions), list(pending_orders))
        return True

    def _apply_snapshot(self, raw_positions: Iterable[Mapping[str, Any]],
                        raw_orders: Iterable[Mapping[str, Any]]) -> TableDiff:
        positions: List[Position] = []
        for record in raw_positions:
            try:
                positions.append(map_position(record, self.sync.position_volume_divisor))
            except RecordValidationError as e:
                self.logger.warning("Dropping invalid position record", field=e.field, value=e.value)

        regular_orders: List[Order] = []
        for record in raw_orders:
            try:
                order = map_order(record, self.sync.order_volume_divisor)
            except RecordValidationError as e:
                self.logger.warning("Dropping invalid order record", field=e.field, value=e.value)
                continue
            if not is_bracket(order):
                regular_orders.append(order)

        brackets: List[Order] = []
        for position in positions:
            brackets.extend(self._brackets_for(position))

        diff = self._tables.replace(positions, regular_orders, brackets)
        if not diff.is_empty:
            self.logger.debug("Applied snapshot",
                              positions=len(positions),
                              orders=len(regular_orders),
                              brackets=len(brackets),
                              removed_positions=len(diff.removed_positions))
        self._notify_diff(diff)
        return diff

    def _brackets_for(self, position: Position) -> List[Order]:
        return build_brackets(position, self.sync.units_per_lot, self.sync.bracket_pl_display_multiplier)

    # --- local mutations -------------------------------------------------

    def _mark_local_action(self, window: float) -> None:
        now = self._clock()
        self._last_local_action_time = now
        self._suppress_until = max(self._suppress_until, now + window)

    def _schedule_confirmation(self, delay: float) -> None:
        async def confirm() -> None:
            await asyncio.sleep(delay)
            await self._safe_cycle()

        self._spawn(confirm())

    async def _token_for_mutation(self, operation: str, entity_id: Optional[str] = None) -> str:
        self._require_ready_for_io()
        token = await self._tokens.get(self._account_id)
        if not token:
            raise MutationError("Failed to get access token", operation=operation, entity_id=entity_id)
        return token

    def _raise_if_failed(self, result: MutationResult, operation: str, entity_id: Optional[str]) -> None:
        if result.success:
            return
        self.logger.error("Mutation rejected", operation=operation, entity_id=entity_id,
                          status=result.status, message=result.message)
        raise MutationError(
            result.message or f"Failed to {operation}",
            operation=operation,
            entity_id=entity_id,
            status=result.status,
            api_response=result.data,
        )

    async def place_order(self, pre_order: PreOrder) -> PlaceOrderResult:
        self._require_ready_for_io()
        is_market = pre_order.type == OrderType.MARKET
        price = None
        if not is_market:
            if pre_order.type == OrderType.STOP:
                price = pre_order.stop_price
            else:
                price = pre_order.limit_price
            if not price or price <= 0:
                raise MutationError("Price is required for pending orders", operation="place_order")

        self._mark_local_action(self.sync.grace_window_seconds)
        try:
            token = await self._token_for_mutation("place_order")
            if is_market:
                result = await self.client.place_market_order(
                    self._account_id, token, pre_order.symbol, pre_order.side, pre_order.qty,
                    stop_loss=pre_order.stop_loss, take_profit=pre_order.take_profit,
                )
            else:
                pending_type = OrderType.LIMIT if pre_order.type == OrderType.LIMIT else OrderType.STOP
                result = await self.client.place_pending_order(
                    self._account_id, token, pre_order.symbol, pre_order.side, pending_type,
                    pre_order.qty, price,
                    stop_loss=pre_order.stop_loss, take_profit=pre_order.take_profit,
                )
        finally:
            self._schedule_confirmation(self.sync.edit_confirm_delay_seconds)
        self._raise_if_failed(result, "place_order", None)

        order_id = extract_order_id(result.data) or "unknown"
        order = Order(
            id=order_id,
            symbol=pre_order.symbol,
            side=pre_order.side,
            type=pre_order.type,
            qty=pre_order.qty,
            status=OrderStatus.FILLED if is_market else OrderStatus.WORKING,
            limit_price=pre_order.limit_price,
            stop_price=pre_order.stop_price,
            take_profit=pre_order.take_profit,
            stop_loss=pre_order.stop_loss,
            support_modify=not is_market,
            support_cancel=not is_market,
        )
        # A filled market order becomes a position on the next snapshot
        if not is_market:
            self._tables.put_order(order)
        self._emit_order(order)

        self.logger.info("Order placed", order_id=order_id, symbol=pre_order.symbol,
                         side=pre_order.side.name, type=pre_order.type.name, qty=pre_order.qty)
        return PlaceOrderResult(order_id=order_id)

    async def modify_order(self, order: Order) -> None:
        """Modify a pending order; a bracket edit becomes a TP/SL edit on its position."""
        parsed = parse_bracket_id(order.id)
        if order.parent_id is not None or parsed is not None:
            parent_id = order.parent_id or parsed[0]
            kind = parsed[1] if parsed is not None else bracket_kind(order)
            if kind == BracketKind.TAKE_PROFIT:
                brackets = Brackets(take_profit=order.limit_price or order.trigger_price)
            else:
                brackets = Brackets(stop_loss=order.stop_price or order.trigger_price)
            await self.edit_position_brackets(parent_id, brackets)
            return

        existing = self._tables.order(order.id)
        if existing is None:
            raise EntityNotFoundError(f"Order not found: {order.id}", entity_id=order.id)

        patched = existing.model_copy(update={
            "qty": order.qty,
            "limit_price": order.limit_price,
            "stop_price": order.stop_price,
            "take_profit": order.take_profit,
            "stop_loss": order.stop_loss,
        })

        self._mark_local_action(self.sync.grace_window_seconds)
        self._tables.put_order(patched)
        self._emit_order(patched)

        try:
            token = await self._token_for_mutation("modify_order", order.id)
            result = await self.client.modify_pending_order(
                self._account_id, token, order.id,
                price=patched.trigger_price,
                stop_loss=patched.stop_loss,
                take_profit=patched.take_profit,
            )
        finally:
            self._schedule_confirmation(self.sync.edit_confirm_delay_seconds)
        self._raise_if_failed(result, "modify_order", order.id)
        self.logger.info("Order modified", order_id=order.id, price=patched.trigger_price)

    async def cancel_order(self, order_id: str) -> None:
        existing = self._tables.order(order_id)
        parsed = parse_bracket_id(order_id)
        if parsed is not None or (existing is not None and existing.parent_id is not None):
            parent_id = existing.parent_id if existing is not None and existing.parent_id else parsed[0]
            kind = parsed[1] if parsed is not None else bracket_kind(existing)
            if kind == BracketKind.TAKE_PROFIT:
                await self.edit_position_brackets(parent_id, Brackets(take_profit=0))
            else:
                await self.edit_position_brackets(parent_id, Brackets(stop_loss=0))
            return

        self._require_ready_for_io()
        self._mark_local_action(self.sync.grace_window_seconds)
        if existing is not None:
            self._tables.remove_order(order_id)
            self._emit_canceled(existing, zero_qty=False)

        try:
            token = await self._token_for_mutation("cancel_order", order_id)
            result = await self.client.cancel_order(self._account_id, token, order_id)
        finally:
            self._schedule_confirmation(self.sync.close_confirm_delay_seconds)
        self._raise_if_failed(result, "cancel_order", order_id)
        self.logger.info("Order canceled", order_id=order_id)

    async def close_position(self, position_id: str) -> None:
        self._require_ready_for_io()
        position = self._tables.position(position_id)
        if position is None:
            raise EntityNotFoundError(f"Position not found: {position_id}", entity_id=position_id)

        self._mark_local_action(self.sync.grace_window_seconds)
        for bracket in self._tables.brackets_for(position_id):
            self._tables.remove_order(bracket.id)
            self._emit_canceled(bracket)
        self._tables.remove_position(position_id)
        self._emit_closed(position)

        try:
            token = await self._token_for_mutation("close_position", position_id)
            result = await self.client.close_position(self._account_id, token, position_id)
        finally:
            self._schedule_confirmation(self.sync.close_confirm_delay_seconds)
        self._raise_if_failed(result, "close_position", position_id)
        self.logger.info("Position closed", position_id=position_id, symbol=position.symbol)

    async def edit_position_brackets(self, position_id: str, brackets: Brackets) -> None:
        """Set TP/SL on a position. None keeps a level; zero or negative clears it."""
        self._require_ready_for_io()
        position = self._tables.position(position_id)
        if position is None:
            raise EntityNotFoundError(f"Position not found: {position_id}", entity_id=position_id)

        take_profit = _resolve_level(brackets.take_profit, position.take_profit)
        stop_loss = _resolve_level(brackets.stop_loss, position.stop_loss)

        self._mark_local_action(self.sync.grace_window_seconds)
        patched = position.model_copy(update={"take_profit": take_profit, "stop_loss": stop_loss})
        self._tables.put_position(patched)

        previous = {b.id: b for b in self._tables.brackets_for(position_id)}
        regenerated = {b.id: b for b in self._brackets_for(patched)}
        for bracket_id, bracket in previous.items():
            if bracket_id not in regenerated:
                self._tables.remove_order(bracket_id)
                self._emit_canceled(bracket)
        self._emit_position(patched)
        for bracket in regenerated.values():
            self._tables.put_order(bracket)
            self._emit_order(bracket)

        try:
            token = await self._token_for_mutation("edit_position_brackets", position_id)
            result = await self.client.modify_position(
                self._account_id, token, position_id, stop_loss=stop_loss, take_profit=take_profit,
            )
        finally:
            self._schedule_confirmation(self.sync.edit_confirm_delay_seconds)
        self._raise_if_failed(result, "edit_position_brackets", position_id)
        self.logger.info("Position brackets updated", position_id=position_id,
                         take_profit=take_profit, stop_loss=stop_loss)


def _resolve_level(requested: Optional[float], current: Optional[float]) -> Optional[float]:
    if requested is None:
        return current
    return requested if requested > 0 else None
