"""Symbol normalization for linear USDT contracts."""
from oko.constants import BYBIT_SETTLE_COIN


def normalize_symbol(symbol: str) -> str:
    """
    Normalize a user or alert supplied symbol to the venue format.

    "btc" -> "BTCUSDT", "eth usdt" -> "ETHUSDT", "SOL/USDT" -> "SOLUSDT",
    "BTCUSDT.P" -> "BTCUSDT".
    """
    if not symbol or not symbol.strip():
        raise ValueError("symbol must be a non-empty string")
    cleaned = symbol.strip().upper()
    for token in (" ", "/", "-", "_", ":"):
        cleaned = cleaned.replace(token, "")
    if cleaned.endswith(".P"):
        cleaned = cleaned[:-2]
    if cleaned.endswith("PERP"):
        cleaned = cleaned[:-4]
    if not cleaned.endswith(BYBIT_SETTLE_COIN):
        cleaned = cleaned + BYBIT_SETTLE_COIN
    return cleaned
