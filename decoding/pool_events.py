# generated by codegen.generate from abi/uniswap_v3_pool.json, do not edit by hand
from dataclasses import dataclass
from typing import ClassVar, Tuple

from decoding.events import DecodedEvent, EventParam

CONTRACT_NAME = "UniswapV3Pool"


@dataclass(frozen=True)
class Burn(DecodedEvent):
    SIGNATURE: ClassVar[str] = "Burn(address,int24,int24,uint128,uint256,uint256)"
    PARAMS: ClassVar[Tuple[EventParam, ...]] = (
        EventParam("owner", "address", True),
        EventParam("tick_lower", "int24", True),
        EventParam("tick_upper", "int24", True),
        EventParam("amount", "uint128", False),
        EventParam("amount0", "uint256", False),
        EventParam("amount1", "uint256", False),
    )

    owner: str
    tick_lower: int
    tick_upper: int
    amount: int
    amount0: int
    amount1: int


@dataclass(frozen=True)
class Collect(DecodedEvent):
    SIGNATURE: ClassVar[str] = "Collect(address,address,int24,int24,uint128,uint128)"
    PARAMS: ClassVar[Tuple[EventParam, ...]] = (
        EventParam("owner", "address", True),
        EventParam("recipient", "address", False),
        EventParam("tick_lower", "int24", True),
        EventParam("tick_upper", "int24", True),
        EventParam("amount0", "uint128", False),
        EventParam("amount1", "uint128", False),
    )

    owner: str
    recipient: str
    tick_lower: int
    tick_upper: int
    amount0: int
    amount1: int


@dataclass(frozen=True)
class CollectProtocol(DecodedEvent):
    SIGNATURE: ClassVar[str] = "CollectProtocol(address,address,uint128,uint128)"
    PARAMS: ClassVar[Tuple[EventParam, ...]] = (
        EventParam("sender", "address", True),
        EventParam("recipient", "address", True),
        EventParam("amount0", "uint128", False),
        EventParam("amount1", "uint128", False),
    )

    sender: str
    recipient: str
    amount0: int
    amount1: int


@dataclass(frozen=True)
class Flash(DecodedEvent):
    SIGNATURE: ClassVar[str] = "Flash(address,address,uint256,uint256,uint256,uint256)"
    PARAMS: ClassVar[Tuple[EventParam, ...]] = (
        EventParam("sender", "address", True),
        EventParam("recipient", "address", True),
        EventParam("amount0", "uint256", False),
        EventParam("amount1", "uint256", False),
        EventParam("paid0", "uint256", False),
        EventParam("paid1", "uint256", False),
    )

    sender: str
    recipient: str
    amount0: int
    amount1: int
    paid0: int
    paid1: int


@dataclass(frozen=True)
class IncreaseObservationCardinalityNext(DecodedEvent):
    SIGNATURE: ClassVar[str] = "IncreaseObservationCardinalityNext(uint16,uint16)"
    PARAMS: ClassVar[Tuple[EventParam, ...]] = (
        EventParam("observation_cardinality_next_old", "uint16", False),
        EventParam("observation_cardinality_next_new", "uint16", False),
    )

    observation_cardinality_next_old: int
    observation_cardinality_next_new: int


@dataclass(frozen=True)
class Initialize(DecodedEvent):
    SIGNATURE: ClassVar[str] = "Initialize(uint160,int24)"
    PARAMS: ClassVar[Tuple[EventParam, ...]] = (
        EventParam("sqrt_price_x96", "uint160", False),
        EventParam("tick", "int24", False),
    )

    sqrt_price_x96: int
    tick: int


@dataclass(frozen=True)
class Mint(DecodedEvent):
    SIGNATURE: ClassVar[str] = "Mint(address,address,int24,int24,uint128,uint256,uint256)"
    PARAMS: ClassVar[Tuple[EventParam, ...]] = (
        EventParam("sender", "address", False),
        EventParam("owner", "address", True),
        EventParam("tick_lower", "int24", True),
        EventParam("tick_upper", "int24", True),
        EventParam("amount", "uint128", False),
        EventParam("amount0", "uint256", False),
        EventParam("amount1", "uint256", False),
    )

    sender: str
    owner: str
    tick_lower: int
    tick_upper: int
    amount: int
    amount0: int
    amount1: int


@dataclass(frozen=True)
class SetFeeProtocol(DecodedEvent):
    SIGNATURE: ClassVar[str] = "SetFeeProtocol(uint8,uint8,uint8,uint8)"
    PARAMS: ClassVar[Tuple[EventParam, ...]] = (
        EventParam("fee_protocol0_old", "uint8", False),
        EventParam("fee_protocol1_old", "uint8", False),
        EventParam("fee_protocol0_new", "uint8", False),
        EventParam("fee_protocol1_new", "uint8", False),
    )

    fee_protocol0_old: int
    fee_protocol1_old: int
    fee_protocol0_new: int
    fee_protocol1_new: int


@dataclass(frozen=True)
class Swap(DecodedEvent):
    SIGNATURE: ClassVar[str] = "Swap(address,address,int256,int256,uint160,uint128,int24)"
    PARAMS: ClassVar[Tuple[EventParam, ...]] = (
        EventParam("sender", "address", True),
        EventParam("recipient", "address", True),
        EventParam("amount0", "int256", False),
        EventParam("amount1", "int256", False),
        EventParam("sqrt_price_x96", "uint160", False),
        EventParam("liquidity", "uint128", False),
        EventParam("tick", "int24", False),
    )

    sender: str
    recipient: str
    amount0: int
    amount1: int
    sqrt_price_x96: int
    liquidity: int
    tick: int


EVENT_TYPES = (
    Burn,
    Collect,
    CollectProtocol,
    Flash,
    IncreaseObservationCardinalityNext,
    Initialize,
    Mint,
    SetFeeProtocol,
    Swap,
)
