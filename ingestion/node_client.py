# ingestion/node_client.py
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from common.errors import ConnectionFatal, ConnectionTransient
from common.models import LogFilter
from ingestion import fetcher

log = logging.getLogger(__name__)


class LogSubscription:
    """A live log subscription. Iterating yields raw log dicts."""

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class NodeClient:
    async def subscribe(self, log_filter: LogFilter) -> LogSubscription:
        raise NotImplementedError

    async def get_logs(self, log_filter: LogFilter, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def get_block_hash(self, block_number: int) -> Optional[str]:
        raise NotImplementedError

    async def block_number(self) -> int:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class WebsocketLogSubscription(LogSubscription):
    """
    eth_subscribe("logs") session over one websocket.

    rules
    one an idle period longer than idle_timeout triggers a ping
    two a missing pong or a closed socket raises ConnectionTransient
    three notifications for other subscription ids are ignored
    """

    def __init__(self, ws, subscription_id: str, idle_timeout: float):
        self._ws = ws
        self.subscription_id = subscription_id
        self.idle_timeout = idle_timeout

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self._iter()

    async def _heartbeat(self) -> None:
        try:
            pong_waiter = await self._ws.ping()
            await asyncio.wait_for(pong_waiter, timeout=self.idle_timeout)
        except (asyncio.TimeoutError, ConnectionClosed) as e:
            raise ConnectionTransient("heartbeat failed, node stopped answering") from e

    async def _iter(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            try:
                raw = await asyncio.wait_for(self._ws.recv(), timeout=self.idle_timeout)
            except asyncio.TimeoutError:
                log.debug("no notification for %.1fs, pinging node", self.idle_timeout)
                await self._heartbeat()
                continue
            except ConnectionClosed as e:
                raise ConnectionTransient(f"websocket closed: {e}") from e

            try:
                message = json.loads(raw)
            except json.JSONDecodeError as e:
                log.warning("dropping invalid JSON frame from node: %s", e)
                continue

            if message.get("method") != "eth_subscription":
                continue
            params = message.get("params") or {}
            if params.get("subscription") != self.subscription_id:
                continue
            result = params.get("result")
            if result:
                yield result

    async def close(self) -> None:
        try:
            await self._ws.send(json.dumps({
                "jsonrpc": "2.0", "id": 2, "method": "eth_unsubscribe", "params": [self.subscription_id],
            }))
        except (ConnectionClosed, OSError):
            pass
        await self._ws.close()


class WebsocketNodeClient(NodeClient):
    """
    Streams logs over a websocket and answers range queries over HTTP JSON-RPC.

    the blocking HTTP helpers in ingestion.fetcher run in a worker thread so the
    event loop keeps serving the subscription.
    """

    def __init__(
        self,
        ws_url: str,
        http_url: str,
        *,
        connect_timeout: float = 10.0,
        idle_timeout: float = 60.0,
        request_timeout: float = 30.0,
    ):
        self.ws_url = ws_url
        self.http_url = http_url
        self.connect_timeout = connect_timeout
        self.idle_timeout = idle_timeout
        self.request_timeout = request_timeout

    async def subscribe(self, log_filter: LogFilter) -> LogSubscription:
        try:
            ws = await asyncio.wait_for(
                websockets.connect(
                    self.ws_url,
                    ping_interval=None,  # heartbeat is driven by the subscription idle timer
                    close_timeout=self.connect_timeout,
                    max_size=10 * 1024 * 1024,
                ),
                timeout=self.connect_timeout,
            )
        except (asyncio.TimeoutError, OSError, WebSocketException) as e:
            raise ConnectionTransient(f"cannot connect to {self.ws_url}: {e}") from e

        request = {"jsonrpc": "2.0", "id": 1, "method": "eth_subscribe", "params": ["logs", log_filter.as_params()]}
        try:
            await ws.send(json.dumps(request))
            response = json.loads(await asyncio.wait_for(ws.recv(), timeout=self.connect_timeout))
        except (asyncio.TimeoutError, ConnectionClosed, json.JSONDecodeError) as e:
            await ws.close()
            raise ConnectionTransient(f"subscription handshake failed: {e}") from e

        if "error" in response:
            await ws.close()
            err = response["error"] if isinstance(response["error"], dict) else {"message": str(response["error"])}
            if fetcher.is_fatal_rpc_error(err):
                raise ConnectionFatal(f"node rejected log filter: {err}")
            raise ConnectionTransient(f"subscription error: {err}")

        sub_id = response.get("result")
        log.info("subscribed to logs of %s, subscription id %s", log_filter.address, sub_id)
        return WebsocketLogSubscription(ws, sub_id, self.idle_timeout)

    async def get_logs(self, log_filter: LogFilter, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(
            fetcher.fetch_logs, self.http_url, log_filter, from_block, to_block, self.request_timeout
        )

    async def get_block_hash(self, block_number: int) -> Optional[str]:
        return await asyncio.to_thread(fetcher.fetch_block_hash, self.http_url, block_number, self.request_timeout)

    async def block_number(self) -> int:
        return await asyncio.to_thread(fetcher.fetch_block_number, self.http_url, self.request_timeout)
