"""
common.utils

Utility helper functions.
"""
import re

_HEX_RE = re.compile(r"^[0-9a-fA-F]*$")


def chunked(start: int, end: int, size: int):
    """
    Yield (start, end) subranges of given size.
    """
    cur = start
    while cur <= end:
        sub_end = min(cur + size - 1, end)
        yield (cur, sub_end)
        cur = sub_end + 1


def strip_0x(s: str) -> str:
    return s[2:] if isinstance(s, str) and s[:2].lower() == "0x" else s


def hex_to_int(v) -> int:
    """Accept ints, 0x hex strings and decimal strings."""
    if v is None:
        raise ValueError("missing integer value")
    if isinstance(v, int):
        return v
    s = str(v).strip().lower()
    return int(s, 16) if s.startswith("0x") else int(s)


def hex_to_bytes(v) -> bytes:
    if v is None:
        return b""
    if isinstance(v, (bytes, bytearray)):
        return bytes(v)
    h = strip_0x(str(v).strip())
    if not _HEX_RE.match(h):
        raise ValueError(f"not a hex string: {v!r}")
    if len(h) % 2:
        h = "0" + h
    return bytes.fromhex(h)


def normalize_hex(v) -> str:
    """Lowercased 0x-prefixed hex for hashes and topics."""
    if isinstance(v, (bytes, bytearray)):
        return "0x" + bytes(v).hex()
    return "0x" + strip_0x(str(v).strip()).lower()


def normalize_address(addr: str) -> str:
    """
    Returns lowercased 0x-prefixed 40-hex address or raises ValueError with a clear message.
    Accepts inputs with extra whitespace/quotes.
    """
    if not addr:
        raise ValueError("Empty contract address.")
    a = str(addr).strip().strip('"').strip("'")
    h = strip_0x(a) if a[:2].lower() == "0x" else a
    if len(h) != 40 or not _HEX_RE.match(h):
        raise ValueError(f"Invalid contract address: {addr!r} (need 20-byte hex, e.g. 0x...40 hex chars)")
    return "0x" + h.lower()

