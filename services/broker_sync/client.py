# REST client for the account backend: snapshots, mutations and login
import asyncio
import json
from typing import Any, Dict, Iterable, List, Optional

import aiohttp

from core.config.settings import Settings
from core.logging import get_api_logger_safe
from core.utils.exceptions import SnapshotAuthError, SnapshotFetchError

from .models import MutationResult, OrderType, Side

# "Request placed" - the trade server accepted the request asynchronously
RETURN_CODE_PLACED = 10012

# Pending-order volume is sent in lots for indices, in hundredths of a lot otherwise
INDEX_MARKERS = (
    "US30", "NAS", "GER", "DE30", "SPX", "UK100", "HK50", "FRA40",
    "ESTX50", "AUS200", "US500", "VIX",
)

# Placeholder accepted by the backend for good-till-cancelled orders
NO_EXPIRATION = "0001-01-01T00:00:00"


def market_order_volume(volume: float) -> int:
    return round(volume * 100)


def pending_order_volume(symbol: str, volume: float) -> float:
    s = symbol.upper()
    if any(marker in s for marker in INDEX_MARKERS):
        return round(volume, 3)
    return round(volume * 100)


def order_number(order_id: Any) -> Optional[int]:
    """Backend numeric id; strips the 'Generated-' prefix of locally listed orders."""
    text = str(order_id).replace("Generated-", "").strip()
    try:
        number = int(text)
    except ValueError:
        return None
    return number if number > 0 else None


def _parse_json(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def _extract_list(data: Any, keys: Iterable[str]) -> List[Dict[str, Any]]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in keys:
            value = data.get(key)
            if isinstance(value, list):
                return value
        inner = data.get("data")
        if inner is not None and inner is not data:
            return _extract_list(inner, keys)
    return []


class MetaApiClient:
    """
    Thin async wrapper over the account backend.

    Snapshot reads raise SnapshotAuthError on 401 and SnapshotFetchError on any
    other failure. Mutations never raise for HTTP failures; they return a
    MutationResult envelope the caller inspects.
    """

    def __init__(self, settings: Settings, session: Optional[aiohttp.ClientSession] = None):
        base = settings.metaapi.base_url
        self.api_base = base if base.endswith("/api") else f"{base}/api"
        self.timeout = aiohttp.ClientTimeout(total=settings.metaapi.request_timeout_seconds)
        self._session = session
        self._owns_session = session is None
        self.logger = get_api_logger_safe("metaapi")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _headers(self, account_id: str, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "AccountId": str(account_id),
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    # --- snapshots -------------------------------------------------------

    async def get_positions(self, account_id: str, token: str) -> List[Dict[str, Any]]:
        data = await self._get_snapshot("/client/Positions", account_id, token)
        return _extract_list(data, ("positions", "Positions"))

    async def get_pending_orders(self, account_id: str, token: str) -> List[Dict[str, Any]]:
        data = await self._get_snapshot("/client/Orders", account_id, token)
        return _extract_list(data, ("orders", "Orders", "pendingOrders", "PendingOrders"))

    async def _get_snapshot(self, path: str, account_id: str, token: str) -> Any:
        session = await self._get_session()
        url = f"{self.api_base}{path}"
        try:
            async with session.get(url, headers=self._headers(account_id, token)) as resp:
                if resp.status == 401:
                    raise SnapshotAuthError(f"Unauthorized fetching {path}", account_id=account_id)
                if resp.status >= 400:
                    body = await resp.text()
                    raise SnapshotFetchError(
                        f"Snapshot fetch {path} failed: {resp.status}",
                        account_id=account_id,
                        status=resp.status,
                        details={"body": body[:500]},
                    )
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise SnapshotFetchError(f"Snapshot fetch {path} failed: {e}", account_id=account_id)

    # --- mutations -------------------------------------------------------

    async def _mutate(self, method: str, path: str, account_id: str, token: str, operation: str,
                      payload: Optional[Dict[str, Any]] = None,
                      params: Optional[Dict[str, str]] = None,
                      soft_statuses: Iterable[int] = ()) -> MutationResult:
        session = await self._get_session()
        url = f"{self.api_base}{path}"
        try:
            async with session.request(
                method, url, json=payload, params=params, headers=self._headers(account_id, token)
            ) as resp:
                text = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.warning("Mutation request failed", operation=operation, error=str(e))
            return MutationResult(success=False, message=str(e) or "Network error")

        data = _parse_json(text)
        if 200 <= status < 300:
            return MutationResult(success=True, data=data, status=status)

        if isinstance(data, dict):
            return_code = data.get("returnCode") or data.get("ReturnCode")
            if return_code == RETURN_CODE_PLACED:
                return MutationResult(success=True, data=data, status=status)

        if status in soft_statuses:
            self.logger.info("Mutation not supported by backend, skipped", operation=operation, status=status)
            return MutationResult(success=True, message=f"{operation} not supported; skipped", status=status)

        self.logger.warning("Mutation rejected", operation=operation, status=status, body=text[:500])
        return MutationResult(
            success=False,
            message=f"Failed to {operation}: {status} - {text}",
            data=data,
            status=status,
        )

    async def place_market_order(self, account_id: str, token: str, symbol: str, side: Side,
                                 volume: float, stop_loss: Optional[float] = None,
                                 take_profit: Optional[float] = None,
                                 comment: Optional[str] = None) -> MutationResult:
        trade_path = "trade-sell" if side == Side.SELL else "trade"
        payload = {
            "Symbol": symbol,
            "Volume": market_order_volume(volume),
            "Price": 0,
            "StopLoss": float(stop_loss or 0),
            "TakeProfit": float(take_profit or 0),
            "Comment": comment or ("Sell" if side == Side.SELL else "Buy"),
        }
        return await self._mutate(
            "POST", f"/client/{trade_path}", account_id, token, "place market order",
            payload=payload, params={"account_id": str(account_id)},
        )

    async def place_pending_order(self, account_id: str, token: str, symbol: str, side: Side,
                                  order_type: OrderType, volume: float, price: float,
                                  stop_loss: Optional[float] = None,
                                  take_profit: Optional[float] = None,
                                  comment: Optional[str] = None) -> MutationResult:
        direction = "buy" if side == Side.BUY else "sell"
        kind = "limit" if order_type == OrderType.LIMIT else "stop"
        payload = {
            "Symbol": symbol,
            "Price": float(price),
            "Volume": pending_order_volume(symbol, volume),
            "StopLoss": float(stop_loss or 0),
            "TakeProfit": float(take_profit or 0),
            "Expiration": NO_EXPIRATION,
            "Comment": comment or "",
        }
        return await self._mutate(
            "POST", f"/client/{direction}-{kind}", account_id, token, "place pending order",
            payload=payload, params={"account_id": str(account_id)},
        )

    async def modify_position(self, account_id: str, token: str, position_id: str,
                              stop_loss: Optional[float], take_profit: Optional[float],
                              comment: str = "Modified TP/SL") -> MutationResult:
        number = order_number(position_id)
        if number is None:
            return MutationResult(success=False, message=f"Invalid position ID: {position_id}")
        # 0 clears a level
        payload = {
            "PositionId": number,
            "StopLoss": float(stop_loss or 0),
            "TakeProfit": float(take_profit or 0),
            "Comment": comment,
        }
        return await self._mutate(
            "POST", "/client/position/modify", account_id, token, "modify position",
            payload=payload, params={"account_id": str(account_id)},
        )

    async def modify_pending_order(self, account_id: str, token: str, order_id: str,
                                   price: Optional[float] = None,
                                   stop_loss: Optional[float] = None,
                                   take_profit: Optional[float] = None,
                                   comment: str = "Modified order") -> MutationResult:
        number = order_number(order_id)
        if number is None:
            return MutationResult(success=False, message=f"Invalid order ID: {order_id}")
        payload: Dict[str, Any] = {"OrderId": number, "Comment": comment}
        if price is not None and price > 0:
            payload["Price"] = float(price)
        if stop_loss is not None:
            payload["StopLoss"] = float(stop_loss) if stop_loss > 0 else 0.0
        if take_profit is not None:
            payload["TakeProfit"] = float(take_profit) if take_profit > 0 else 0.0
        return await self._mutate(
            "PUT", f"/client/order/{number}", account_id, token, "modify pending order",
            payload=payload, soft_statuses=(404, 405, 501),
        )

    async def cancel_order(self, account_id: str, token: str, order_id: str,
                           comment: str = "Cancelled") -> MutationResult:
        number = order_number(order_id)
        if number is None:
            return MutationResult(success=False, message=f"Invalid order ID: {order_id}")
        return await self._mutate(
            "DELETE", f"/client/order/{number}", account_id, token, "cancel order",
            payload={"Comment": comment},
        )

    async def close_position(self, account_id: str, token: str, position_id: str,
                             volume: float = 0, comment: str = "Closed") -> MutationResult:
        """Full close when volume is 0; DELETE first, POST /close as fallback."""
        number = order_number(position_id)
        if number is None:
            return MutationResult(success=False, message=f"Invalid position ID: {position_id}")

        result = await self._mutate(
            "DELETE", f"/client/position/{number}", account_id, token, "close position",
        )
        if result.success:
            return result

        payload: Dict[str, Any] = {"positionId": number, "comment": comment}
        if volume and volume > 0:
            payload["volume"] = float(volume)
        self.logger.info("Close via DELETE failed, trying POST fallback", position_id=position_id)
        return await self._mutate(
            "POST", "/client/position/close", account_id, token, "close position", payload=payload,
        )

    # --- auth ------------------------------------------------------------

    async def login(self, account_id: str, password: str, device_id: str, device_type: str) -> Optional[str]:
        """Exchange account credentials for a bearer token; None on failure."""
        session = await self._get_session()
        payload = {
            "AccountId": int(account_id) if str(account_id).isdigit() else account_id,
            "Password": password,
            "DeviceId": device_id,
            "DeviceType": device_type,
        }
        try:
            async with session.post(f"{self.api_base}/client/ClientAuth/login", json=payload) as resp:
                if resp.status >= 400:
                    self.logger.warning("Login rejected", account_id=account_id, status=resp.status)
                    return None
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self.logger.error("Login request failed", account_id=account_id, error=str(e))
            return None

        if not isinstance(data, dict):
            return None
        return data.get("Token") or data.get("token")
