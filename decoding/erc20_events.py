# generated by codegen.generate from abi/erc20.json, do not edit by hand
from dataclasses import dataclass
from typing import ClassVar, Tuple

from decoding.events import DecodedEvent, EventParam

CONTRACT_NAME = "ERC20"


@dataclass(frozen=True)
class Approval(DecodedEvent):
    SIGNATURE: ClassVar[str] = "Approval(address,address,uint256)"
    PARAMS: ClassVar[Tuple[EventParam, ...]] = (
        EventParam("owner", "address", True),
        EventParam("spender", "address", True),
        EventParam("value", "uint256", False),
    )

    owner: str
    spender: str
    value: int


@dataclass(frozen=True)
class Transfer(DecodedEvent):
    SIGNATURE: ClassVar[str] = "Transfer(address,address,uint256)"
    PARAMS: ClassVar[Tuple[EventParam, ...]] = (
        EventParam("from_", "address", True),
        EventParam("to", "address", True),
        EventParam("value", "uint256", False),
    )

    from_: str
    to: str
    value: int


EVENT_TYPES = (
    Approval,
    Transfer,
)
