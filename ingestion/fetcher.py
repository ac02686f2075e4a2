# ingestion/fetcher.py
"""
Blocking JSON-RPC helpers over HTTP used for range queries.

Retrying is left to the caller; these helpers only translate transport and
node errors into the connection error taxonomy.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

import requests

from common.errors import ConnectionFatal, ConnectionTransient, RangeTooLarge
from common.models import LogFilter
from common.utils import hex_to_int, normalize_hex

# JSON-RPC codes a node uses for a request it will never accept
FATAL_RPC_CODES = (-32600, -32601)
# a rejected filter at subscription time also shows up as bad params
FILTER_REJECTED_CODES = FATAL_RPC_CODES + (-32602,)
_RANGE_LIMIT_HINTS = (
    "block range",
    "range too large",
    "range is too large",
    "query returned more than",
    "response size",
    "too many results",
    "limit the query",
)
_RETRYABLE_STATUS = (429, 500, 502, 503, 504)


def is_fatal_rpc_error(err: Dict[str, Any]) -> bool:
    """True when a subscribe request was refused for its filter, not for load."""
    msg = str(err.get("message", ""))
    return err.get("code") in FILTER_REJECTED_CODES or "invalid" in msg.lower()


def is_range_limit_error(err: Dict[str, Any]) -> bool:
    msg = str(err.get("message", "")).lower()
    return any(hint in msg for hint in _RANGE_LIMIT_HINTS)


def _rpc_post(url: str, method: str, params: List[Any], timeout: float = 30.0) -> Any:
    """
    Return the JSON RPC result field directly.
    """
    payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
    try:
        resp = requests.post(url, json=payload, timeout=timeout)
        if resp.status_code in _RETRYABLE_STATUS:
            raise ConnectionTransient(f"RPC {method} got HTTP {resp.status_code}")
        resp.raise_for_status()
        data = resp.json()
    except requests.RequestException as e:
        raise ConnectionTransient(f"RPC transport failed for {method} url={url}") from e
    except ValueError as e:
        raise ConnectionTransient(f"RPC {method} returned invalid JSON") from e

    if "error" in data:
        err = data["error"] if isinstance(data["error"], dict) else {"message": str(data["error"])}
        if is_range_limit_error(err):
            raise RangeTooLarge(f"RPC {method} range rejected: {err}")
        if err.get("code") in FATAL_RPC_CODES:
            raise ConnectionFatal(f"RPC error for {method}: {err}")
        raise ConnectionTransient(f"RPC error for {method}: {err}")
    return data.get("result")


def fetch_block_number(url: str, timeout: float = 30.0) -> int:
    return hex_to_int(_rpc_post(url, "eth_blockNumber", [], timeout=timeout))


def fetch_block_hash(url: str, block_number: int, timeout: float = 30.0) -> Optional[str]:
    if not isinstance(block_number, int) or block_number < 0:
        raise ValueError("block_number must be a non negative integer")
    block = _rpc_post(url, "eth_getBlockByNumber", [hex(block_number), False], timeout=timeout)
    if not block or not block.get("hash"):
        return None
    return normalize_hex(block["hash"])


def fetch_logs(url: str, log_filter: LogFilter, from_block: int, to_block: int, timeout: float = 30.0) -> List[Dict[str, Any]]:
    if not isinstance(from_block, int) or not isinstance(to_block, int):
        raise ValueError("from_block and to_block must be integers")
    if from_block < 0 or to_block < from_block:
        raise ValueError("invalid block range")
    params = [log_filter.as_params(from_block, to_block)]
    result = _rpc_post(url, "eth_getLogs", params, timeout=timeout)
    if not isinstance(result, list):
        raise ConnectionTransient("RPC response for eth_getLogs did not return a list")
    return result


__all__ = [
    "fetch_block_number",
    "fetch_block_hash",
    "fetch_logs",
]
