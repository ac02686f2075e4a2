# codegen/generate.py
"""
codegen.generate

Offline generator: contract ABI JSON -> Python module with one frozen
dataclass per ABI event and an EVENT_TYPES tuple consumed by the decoder.

Run through the CLI:
  event-indexer generate --abi abi/uniswap_v3_pool.json --out decoding/pool_events.py --name UniswapV3Pool
"""
import dataclasses
import json
import keyword
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from decoding.events import DecodedEvent, python_type

log = logging.getLogger(__name__)

_CAMEL = re.compile(r"(?<=[a-z0-9])([A-Z])")
_RESERVED = {f.name for f in dataclasses.fields(DecodedEvent)} | {
    "key", "position", "args", "to_row", "event_name", "topic0",
}


def load_abi(path) -> List[Dict[str, Any]]:
    """Read a plain ABI list or a build artifact carrying an "abi" key."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("abi")
    if not isinstance(data, list):
        raise ValueError(f"{path} does not contain an ABI list")
    return data


def canonical_type(param: Dict[str, Any]) -> str:
    t = param["type"]
    if t.startswith("tuple"):
        inner = ",".join(canonical_type(c) for c in param.get("components") or [])
        return f"({inner}){t[len('tuple'):]}"
    return t


def event_signature(entry: Dict[str, Any]) -> str:
    types = ",".join(canonical_type(p) for p in entry.get("inputs") or [])
    return f"{entry['name']}({types})"


def snake_case(name: str) -> str:
    return _CAMEL.sub(r"_\1", name.lstrip("_")).lower()


def field_name(raw: str, position: int, taken: Set[str]) -> str:
    name = snake_case(raw or "") or f"arg{position}"
    if keyword.iskeyword(name) or name in _RESERVED:
        name += "_"
    while name in taken:
        name += "_"
    return name


def _render_event(class_name: str, entry: Dict[str, Any]) -> str:
    params = []
    taken: Set[str] = set()
    for i, inp in enumerate(entry.get("inputs") or []):
        fname = field_name(inp.get("name", ""), i, taken)
        taken.add(fname)
        params.append((fname, canonical_type(inp), bool(inp.get("indexed"))))

    lines = [
        "@dataclass(frozen=True)",
        f"class {class_name}(DecodedEvent):",
        f'    SIGNATURE: ClassVar[str] = "{event_signature(entry)}"',
    ]
    if not params:
        lines.append("    PARAMS: ClassVar[Tuple[EventParam, ...]] = ()")
        return "\n".join(lines)

    lines.append("    PARAMS: ClassVar[Tuple[EventParam, ...]] = (")
    for fname, abi_type, indexed in params:
        lines.append(f'        EventParam("{fname}", "{abi_type}", {indexed}),')
    lines.append("    )")
    lines.append("")
    for fname, abi_type, indexed in params:
        lines.append(f"    {fname}: {python_type(abi_type, indexed)}")
    return "\n".join(lines)


def render_module(abi: List[Dict[str, Any]], contract_name: str, source: str) -> str:
    classes: List[str] = []
    names: List[str] = []
    for entry in abi:
        if entry.get("type") != "event":
            continue
        if entry.get("anonymous"):
            # no topic0 to dispatch on
            log.warning("skipping anonymous event %s", entry.get("name"))
            continue
        class_name = entry["name"]
        n = 2
        while class_name in names:
            class_name = f"{entry['name']}{n}"
            n += 1
        names.append(class_name)
        classes.append(_render_event(class_name, entry))

    out = [
        f"# generated by codegen.generate from {source}, do not edit by hand",
        "from dataclasses import dataclass",
        "from typing import ClassVar, Tuple",
        "",
        "from decoding.events import DecodedEvent, EventParam",
        "",
        f'CONTRACT_NAME = "{contract_name}"',
        "",
        "",
    ]
    for body in classes:
        out.append(body)
        out.append("")
        out.append("")
    if names:
        out.append("EVENT_TYPES = (")
        out.extend(f"    {n}," for n in names)
        out.append(")")
    else:
        out.append("EVENT_TYPES = ()")
    return "\n".join(out) + "\n"


def generate_types(abi_path, out_file, contract_name: Optional[str] = None) -> int:
    """Write the generated module and return how many event classes it holds."""
    abi = load_abi(abi_path)
    name = contract_name or Path(abi_path).stem
    source = Path(abi_path).as_posix()
    text = render_module(abi, name, source)

    out = Path(out_file)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(text, encoding="utf-8")

    count = text.count("(DecodedEvent):")
    log.info("wrote %d event types for %s to %s", count, name, out)
    return count
