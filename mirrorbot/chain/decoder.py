"""Decoder for CTF exchange ``fillOrders`` calldata.

Only the first order of a batch is reported. Anything that is not a
``fillOrders`` call, or fails to decode, yields None.
"""

from __future__ import annotations

from dataclasses import dataclass

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_utils import function_signature_to_4byte_selector

from mirrorbot.models import Side

_ORDER_TUPLE = (
    "(bytes32,address,address,address,uint256,uint256,uint256,"
    "uint256,uint256,uint256,uint8,uint8,bytes)"
)
FILL_ORDERS_SIGNATURE = f"fillOrders({_ORDER_TUPLE}[],uint256[],uint256[])"
FILL_ORDERS_SELECTOR = function_signature_to_4byte_selector(FILL_ORDERS_SIGNATURE)
_FILL_ORDERS_ARGS = [f"{_ORDER_TUPLE}[]", "uint256[]", "uint256[]"]

# Field positions inside the Order tuple
_TOKEN_ID, _MAKER_AMOUNT, _TAKER_AMOUNT, _SIDE = 4, 5, 6, 10


@dataclass(frozen=True)
class DecodedFill:
    function_name: str
    token_id: str
    maker_amount: int
    taker_amount: int
    side: Side


def _to_bytes(input_data: str | bytes) -> bytes:
    if isinstance(input_data, bytes):
        return input_data
    text = input_data[2:] if input_data.startswith("0x") else input_data
    return bytes.fromhex(text)


def decode_fill_input(input_data: str | bytes | None) -> DecodedFill | None:
    """Decode the first order of a ``fillOrders`` call."""
    if not input_data:
        return None
    try:
        raw = _to_bytes(input_data)
        if raw[:4] != FILL_ORDERS_SELECTOR:
            return None
        orders, _, _ = abi_decode(_FILL_ORDERS_ARGS, raw[4:])
    except Exception:  # eth_abi raises a wide family of decoding errors
        return None
    if not orders:
        return None

    order = orders[0]
    return DecodedFill(
        function_name="fillOrders",
        token_id=str(order[_TOKEN_ID]),
        maker_amount=int(order[_MAKER_AMOUNT]),
        taker_amount=int(order[_TAKER_AMOUNT]),
        side=Side.BUY if order[_SIDE] == 0 else Side.SELL,
    )


def encode_fill_input(
    token_id: int,
    maker_amount: int,
    taker_amount: int,
    side: Side,
    *,
    maker: str = "0x" + "11" * 20,
) -> str:
    """Build ``fillOrders`` calldata for a single order (fixtures and replays)."""
    order = (
        b"\x00" * 32, maker, maker, "0x" + "00" * 20, token_id,
        maker_amount, taker_amount, 0, 0, 0,
        0 if side is Side.BUY else 1, 0, b"",
    )
    body = abi_encode(_FILL_ORDERS_ARGS, [[order], [maker_amount], [taker_amount]])
    return "0x" + (FILL_ORDERS_SELECTOR + body).hex()
