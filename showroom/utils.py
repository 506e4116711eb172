import json
from typing import Any, Optional

SEED_RANGE = 1000


def optimized_seed(public_id: str, prompt: Optional[str]) -> int:
    """
    Deterministic seed in [1, 1000] for a (public_id, prompt) pair.

    Uses the classic 31-multiplier string hash wrapped to a signed 32-bit int,
    so the same image and prompt always reproduce the same generation.
    """
    h = 0
    for ch in f"{public_id}:{prompt or ''}":
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h) % SEED_RANGE + 1


def safe_preview(s: Any, max_chars: int) -> str:
    if s is None:
        return ""
    if not isinstance(s, str):
        try:
            s = json.dumps(s, default=str)
        except (TypeError, ValueError):
            s = str(s)
    return s if len(s) <= max_chars else s[:max_chars] + "...(truncated)"


def extract_error_message(body: Any) -> Optional[str]:
    """
    Error bodies come back as {"error": "..."} or {"error": {"message": ...}}.
    """
    if not isinstance(body, dict):
        return None
    err = body.get("error")
    if isinstance(err, dict):
        return err.get("message") or json.dumps(err)
    if err:
        return str(err)
    return None
