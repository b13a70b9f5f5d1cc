"""
Helper utilities
"""
from typing import Any, List
import json
import time


def epoch_ms() -> int:
    """Current time in epoch milliseconds"""
    return int(time.time() * 1000)


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Safely divide two numbers"""
    try:
        return numerator / denominator if denominator != 0 else default
    except (TypeError, ZeroDivisionError):
        return default


def chunk_list(lst: List, chunk_size: int) -> List[List]:
    """Split list into chunks"""
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]


def payload_snapshot(data: Any, limit: int = 200) -> str:
    """Truncated JSON rendering of a payload for log context"""
    try:
        text = json.dumps(data, default=str)
    except (TypeError, ValueError):
        text = repr(data)
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
