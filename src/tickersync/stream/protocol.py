"""KIS real-time stream wire protocol.

Three kinds of inbound frames share one connection:

- ``PINGPONG`` keep-alive JSON, which must be echoed back verbatim.
- Data frames starting with ``0`` (plain) or ``1`` (encrypted flag), shaped
  ``<flag>|<tr_id>|<count>|<field>^<field>^...``.
- Any other JSON frame is a control message (subscription acknowledgement or
  rejection).
"""

import json
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from tickersync.broker.types import to_decimal
from tickersync.market.symbols import is_index_symbol
from tickersync.models import Direction, direction_from_sign

TR_KRX_TRADE = "H0STCNT0"
TR_NXT_TRADE = "H0NXCNT0"
TR_INDEX_TRADE = "H0STCNI0"

# Rejections on these ids are surfaced per symbol; NXT rejections are ignored
# because many instruments do not trade on the alternate venue.
PRIMARY_TR_IDS = frozenset({TR_KRX_TRADE, TR_INDEX_TRADE})

SUCCESS_MSG_CODE = "MCA00000"
KEEPALIVE_MARKER = "PINGPONG"


class FrameKind(str, Enum):
    KEEPALIVE = "keepalive"
    DATA = "data"
    CONTROL = "control"


@dataclass(frozen=True)
class StreamTick:
    """One decoded trade tick."""

    symbol: str
    tr_id: str
    price: Decimal
    change_rate: Decimal
    direction: Direction
    base_price: Decimal | None


@dataclass(frozen=True)
class ControlMessage:
    tr_id: str
    symbol: str
    rt_cd: str
    msg_cd: str
    message: str

    @property
    def is_rejection(self) -> bool:
        return self.msg_cd != SUCCESS_MSG_CODE and self.rt_cd != "0"


def subscription_tr_ids(symbol: str) -> tuple[str, ...]:
    """Stream ids a symbol is subscribed on: both venues for instruments."""
    if is_index_symbol(symbol):
        return (TR_INDEX_TRADE,)
    return (TR_KRX_TRADE, TR_NXT_TRADE)


def build_subscription_message(
    approval_key: str, symbol: str, tr_id: str, subscribe: bool = True
) -> str:
    return json.dumps(
        {
            "header": {
                "approval_key": approval_key,
                "custtype": "P",
                "tr_type": "1" if subscribe else "2",
                "content-type": "utf-8",
            },
            "body": {"input": {"tr_id": tr_id, "tr_key": symbol}},
        }
    )


def classify_frame(raw: str) -> FrameKind:
    if KEEPALIVE_MARKER in raw:
        return FrameKind.KEEPALIVE
    if raw[:1] in ("0", "1"):
        return FrameKind.DATA
    return FrameKind.CONTROL


def _base_price(price: Decimal, diff: Decimal, direction: Direction) -> Decimal | None:
    if direction is Direction.UP:
        base = price - abs(diff)
    elif direction is Direction.DOWN:
        base = price + abs(diff)
    else:
        base = price
    return base if base > 0 else None


def parse_data_frame(raw: str) -> StreamTick:
    """Decode a data frame.

    Raises:
        ValueError: If the frame is malformed or carries no usable price.
    """
    parts = raw.split("|")
    if len(parts) < 4:
        raise ValueError(f"Malformed data frame: {raw[:40]!r}")
    tr_id = parts[1]
    fields = parts[3].split("^")
    if not fields or not fields[0]:
        raise ValueError("Data frame without symbol")
    symbol = fields[0]

    index = tr_id == TR_INDEX_TRADE or (tr_id not in (TR_KRX_TRADE, TR_NXT_TRADE) and is_index_symbol(symbol))
    if index:
        if len(fields) < 7:
            raise ValueError(f"Short index frame for {symbol}")
        price, sign, diff, rate = fields[6], fields[3], fields[4], fields[5]
    else:
        if len(fields) < 6:
            raise ValueError(f"Short trade frame for {symbol}")
        price, sign, diff, rate = fields[2], fields[3], fields[4], fields[5]

    value = to_decimal(price)
    if value <= 0:
        raise ValueError(f"No price in frame for {symbol}")
    direction = direction_from_sign(sign)
    return StreamTick(
        symbol=symbol,
        tr_id=tr_id,
        price=value,
        change_rate=to_decimal(rate),
        direction=direction,
        base_price=_base_price(value, to_decimal(diff), direction),
    )


def parse_control_frame(raw: str) -> ControlMessage | None:
    """Decode a JSON control frame; None if it is not one."""
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    header = data.get("header") or {}
    body = data.get("body") or {}
    if not isinstance(header, dict) or not isinstance(body, dict):
        return None
    return ControlMessage(
        tr_id=header.get("tr_id", ""),
        symbol=header.get("tr_key", ""),
        rt_cd=str(body.get("rt_cd", "")),
        msg_cd=body.get("msg_cd", ""),
        message=body.get("msg1", ""),
    )
