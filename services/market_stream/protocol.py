# Stream wire protocol: outbound request encoding and inbound frame decoding
import json
from typing import Iterable, Optional, Union

from pydantic import ValidationError

from core.utils.exceptions import FrameParseError

from .models import CandleSnapshot, CandleUpdate

LIVE_STREAMS = ["candle_live"]

InboundFrame = Union[CandleUpdate, CandleSnapshot]


def encode_subscribe(symbols: Iterable[str]) -> str:
    """sub_symbols request, consolidated or per-symbol."""
    return json.dumps({
        "type": "sub_symbols",
        "symbols": list(symbols),
        "streams": LIVE_STREAMS,
    })


def encode_history_request(symbol: str, timeframe: str, count: int) -> str:
    return json.dumps({
        "type": "candle_history",
        "symbol": symbol,
        "tf": timeframe,
        "count": count,
    })


def decode_frame(raw: Union[str, bytes]) -> Optional[InboundFrame]:
    """
    Parse one inbound frame.

    Returns None for well-formed frames of a type this client does not consume.
    Raises FrameParseError for anything that is not a valid JSON object or does
    not match the shape of its declared type.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise FrameParseError(f"Invalid JSON frame: {e}", raw_frame=raw)

    if not isinstance(data, dict):
        raise FrameParseError("Frame is not a JSON object", raw_frame=raw)

    frame_type = data.get("type")
    try:
        if frame_type == "candle_update":
            return CandleUpdate.model_validate(data)
        if frame_type == "candle_snapshot":
            return CandleSnapshot.model_validate(data)
    except ValidationError as e:
        raise FrameParseError(
            f"Malformed {frame_type} frame",
            raw_frame=raw,
            details={"errors": e.errors(include_url=False)},
        )
    return None
