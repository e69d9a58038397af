"""
Async MetaApi REST client over HTTP/2.

Two base URLs are involved: the provisioning API (account list/create,
deploy/undeploy) and the regional client API (account information,
positions, deal history, trading). Both authenticate with the `auth-token`
header.

Read-only calls retry transport failures with jittered exponential backoff.
Trade calls are never retried: a retried market order can double-fill.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from mt5control.broker.types import (
    AccountInfo,
    CloseAllResult,
    Deal,
    LivePosition,
    OrderRequest,
    OrderResult,
    RemoteAccount,
    robot_comment,
)
from mt5control.core.errors import BrokerError, BrokerNotFoundError, RemoteTimeoutError
from mt5control.core.utils import to_float_safe
from mt5control.ledger.models import Direction

log = logging.getLogger("mt5control")

TRADE_SUCCESS_CODES = frozenset({
    "ERR_NO_ERROR",
    "TRADE_RETCODE_PLACED",
    "TRADE_RETCODE_DONE",
    "TRADE_RETCODE_DONE_PARTIAL",
    "TRADE_RETCODE_NO_CHANGES",
})
# Close of a position that is already gone
POSITION_GONE_CODES = frozenset({"TRADE_RETCODE_POSITION_CLOSED", "TRADE_RETCODE_INVALID_POSITION"})


def _iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class MetaApiClient:
    """
    BrokerGateway implementation backed by the MetaApi REST API.

    Clients passed in are shared and not closed by close(); otherwise the
    instance owns its clients.
    """

    def __init__(
        self,
        token: str,
        provisioning_url: str,
        client_url: str,
        comment_prefix: str,
        timeout: float = 10.0,
        retries: int = 2,
        provisioning_client: Optional[httpx.AsyncClient] = None,
        trading_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.comment_prefix = comment_prefix
        self._timeout = timeout
        self._retries = retries
        headers = {"auth-token": token, "Accept": "application/json"}
        self._owns_clients = provisioning_client is None and trading_client is None
        self._prov = provisioning_client or httpx.AsyncClient(
            base_url=provisioning_url.rstrip("/"), http2=True, timeout=timeout, headers=headers,
        )
        self._client = trading_client or httpx.AsyncClient(
            base_url=client_url.rstrip("/"), http2=True, timeout=timeout, headers=headers,
        )

    async def close(self) -> None:
        if self._owns_clients:
            await self._prov.aclose()
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    async def list_accounts(self) -> List[RemoteAccount]:
        data = await self._request(self._prov, "GET", "/users/current/accounts", "list_accounts", retry=True)
        return [RemoteAccount.from_api(item) for item in (data or [])]

    async def create_account(
        self,
        login: str,
        password: str,
        server: str,
        name: Optional[str] = None,
    ) -> RemoteAccount:
        payload = {
            "name": name or f"mt5c_{login}",
            "type": "cloud",
            "login": str(login),
            "password": password,
            "server": server,
            "platform": "mt5",
            "magic": 0,
        }
        data = await self._request(self._prov, "POST", "/users/current/accounts", "create_account", json_body=payload)
        return RemoteAccount(
            id=str(data.get("id") or data.get("_id")),
            login=str(login),
            server=server,
            state=str(data.get("state", "CREATED")),
        )

    async def deploy(self, remote_id: str) -> None:
        await self._request(self._prov, "POST", f"/users/current/accounts/{remote_id}/deploy", "deploy")

    async def undeploy(self, remote_id: str) -> None:
        await self._request(self._prov, "POST", f"/users/current/accounts/{remote_id}/undeploy", "undeploy")

    # ------------------------------------------------------------------
    # Account data
    # ------------------------------------------------------------------

    async def get_account_info(self, remote_id: str) -> AccountInfo:
        data = await self._request(
            self._client, "GET", f"/users/current/accounts/{remote_id}/account-information",
            "get_account_info", retry=True,
        )
        return AccountInfo.from_api(data or {})

    async def get_open_positions(self, remote_id: str) -> List[LivePosition]:
        data = await self._request(
            self._client, "GET", f"/users/current/accounts/{remote_id}/positions",
            "get_open_positions", retry=True,
        )
        return [LivePosition.from_api(item) for item in (data or [])]

    async def get_deal_history(
        self,
        remote_id: str,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> List[Deal]:
        """Deals in [since, until], in the order the broker returns them."""
        until = until or datetime.now(timezone.utc)
        path = (
            f"/users/current/accounts/{remote_id}/history-deals/time/"
            f"{_iso_utc(since)}/{_iso_utc(until)}"
        )
        data = await self._request(self._client, "GET", path, "get_deal_history", retry=True)
        if isinstance(data, dict):
            data = data.get("deals", [])
        return [Deal.from_api(item) for item in (data or [])]

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    async def place_order(self, remote_id: str, order: OrderRequest) -> OrderResult:
        payload: Dict[str, Any] = {
            "actionType": "ORDER_TYPE_BUY" if order.side is Direction.BUY else "ORDER_TYPE_SELL",
            "symbol": order.symbol,
            "volume": order.volume,
            "comment": order.comment,
        }
        if order.stop_loss is not None:
            payload["stopLoss"] = order.stop_loss
        if order.take_profit is not None:
            payload["takeProfit"] = order.take_profit
        data = await self._trade(remote_id, payload, "place_order")
        return OrderResult(
            order_id=_str_or_none(data.get("orderId")),
            position_id=_str_or_none(data.get("positionId") or data.get("orderId")),
            price=to_float_safe(data.get("price")),
            string_code=data.get("stringCode"),
        )

    async def close_position(self, remote_id: str, position_id: str) -> None:
        """Close one position. A position that is already gone counts as closed."""
        payload = {"actionType": "POSITION_CLOSE_ID", "positionId": str(position_id)}
        try:
            await self._trade(remote_id, payload, "close_position")
        except BrokerNotFoundError:
            log.info(json.dumps({"event": "close_position_already_gone", "position_id": str(position_id)}))

    async def close_all_positions(self, remote_id: str, robot_id: Optional[str] = None) -> CloseAllResult:
        """
        Close every open position, or only those tagged with robot_id.

        Failures are collected per position rather than raised, so one bad
        position does not leave the rest open.
        """
        positions = await self.get_open_positions(remote_id)
        if robot_id is not None:
            tag = robot_comment(self.comment_prefix, robot_id)
            positions = [p for p in positions if p.comment == tag]

        result = CloseAllResult()
        for pos in positions:
            try:
                await self.close_position(remote_id, pos.id)
            except (BrokerError, RemoteTimeoutError) as exc:
                result.failed[pos.id] = str(exc)
                continue
            result.closed_ids.append(pos.id)
        return result

    async def _trade(self, remote_id: str, payload: Dict[str, Any], operation: str) -> Dict[str, Any]:
        data = await self._request(
            self._client, "POST", f"/users/current/accounts/{remote_id}/trade", operation, json_body=payload,
        )
        data = data or {}
        code = data.get("stringCode")
        if code in POSITION_GONE_CODES:
            raise BrokerNotFoundError(f"{operation}: {code}", status_code=404)
        if code is not None and code not in TRADE_SUCCESS_CODES:
            raise BrokerError(f"{operation} rejected: {code} {data.get('message', '')}".strip())
        return data

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        operation: str,
        json_body: Optional[Dict[str, Any]] = None,
        retry: bool = False,
    ) -> Any:
        retries = self._retries if retry else 0
        backoff = 0.2
        for attempt in range(retries + 1):
            try:
                resp = await client.request(method, path, json=json_body)
            except httpx.TimeoutException as exc:
                if attempt >= retries:
                    raise RemoteTimeoutError(operation, self._timeout) from exc
            except httpx.TransportError as exc:
                if attempt >= retries:
                    raise BrokerError(f"{operation} transport error: {exc}") from exc
            else:
                return self._decode(resp, operation)
            log.warning(json.dumps({"event": "remote_call_retry", "operation": operation, "attempt": attempt + 1}))
            await asyncio.sleep(backoff + random.uniform(0, backoff * 0.5))
            backoff *= 2
        raise BrokerError(f"{operation} failed after {retries + 1} attempts")

    @staticmethod
    def _decode(resp: httpx.Response, operation: str) -> Any:
        if resp.status_code == 404:
            raise BrokerNotFoundError(f"{operation}: not found", status_code=404)
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("message", resp.text)
            except (ValueError, AttributeError):
                detail = resp.text
            raise BrokerError(f"{operation} failed ({resp.status_code}): {detail}", status_code=resp.status_code)
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None
