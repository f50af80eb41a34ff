# Symbol normalization and resolution-to-timeframe mapping
import re

# One trailing run of lower-case broker suffix letters (BTCUSDm -> BTCUSD).
# Lower-case only, so real currency letters survive (USDCHF keeps its CHF).
_SUFFIX_RE = re.compile(r"[macfhr]+$")

# Charting resolution codes -> stream timeframe vocabulary
RESOLUTION_TO_TIMEFRAME = {
    "1": "M1",
    "5": "M5",
    "15": "M15",
    "60": "H1",
    "240": "H4",
    "D": "D1",
    "1D": "D1",
    "W": "W1",
    "1W": "W1",
    "M": "Mn1",
    "1M": "Mn1",
}

SUPPORTED_RESOLUTIONS = ["1", "5", "15", "60", "240", "1D", "1W", "1M"]


def normalize_symbol(symbol: str) -> str:
    """Canonical upper-case instrument code with broker suffix letters stripped."""
    if not symbol:
        return ""
    base = symbol.split(".")[0].strip()
    return _SUFFIX_RE.sub("", base).upper()


def resolve_timeframe(resolution: str) -> str:
    """Map a short resolution code to the stream timeframe; unknown codes pass through."""
    return RESOLUTION_TO_TIMEFRAME.get(resolution, resolution)


def history_key(symbol: str, timeframe: str) -> str:
    """Key used to match a history request with its snapshot response."""
    return f"{normalize_symbol(symbol)}-{timeframe}"
