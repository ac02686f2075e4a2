# ingestion/parser.py
"""
ingestion.parser
Module to parse raw node log JSON into RawLog records.
"""
from typing import Any, Dict, Iterable, List

from common.models import RawLog, sort_logs
from common.utils import hex_to_bytes, hex_to_int, normalize_address, normalize_hex

_REQUIRED = ("blockNumber", "blockHash", "transactionHash", "logIndex", "topics")


def parse_log(log_json: Dict[str, Any]) -> RawLog:
    if not log_json or any(k not in log_json for k in _REQUIRED):
        raise ValueError("Invalid log JSON")
    if log_json.get("blockHash") is None or log_json.get("blockNumber") is None:
        # pending logs carry no block yet
        raise ValueError("Log is not mined yet")
    try:
        return RawLog(
            address=normalize_address(log_json.get("address") or ""),
            block_number=hex_to_int(log_json["blockNumber"]),
            block_hash=normalize_hex(log_json["blockHash"]),
            transaction_hash=normalize_hex(log_json["transactionHash"]),
            log_index=hex_to_int(log_json["logIndex"]),
            topics=tuple(normalize_hex(t) for t in (log_json.get("topics") or [])),
            data=hex_to_bytes(log_json.get("data") or "0x"),
            removed=bool(log_json.get("removed", False)),
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid log JSON: {e}") from e


def parse_logs(raw_logs: Iterable[Dict[str, Any]]) -> List[RawLog]:
    """Parse and return logs in chain order."""
    return sort_logs([parse_log(lg) for lg in raw_logs or []])
