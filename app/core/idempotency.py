"""Idempotency key and content-similarity utilities."""

import hashlib
import json
import re
from datetime import datetime, timezone

_WHITESPACE_RE = re.compile(r"\s+")

# Coarse bucket for synthesized provider ids, in seconds
SYNTHETIC_ID_BUCKET_SECONDS = 60


def generate_idempotency_key(*parts: object) -> str:
    """Generate an idempotency key from ordered parts.

    Args:
        parts: Key components; None is rendered as "null"

    Returns:
        Hex sha256 of the "|"-joined parts
    """
    key_string = "|".join("null" if part is None else str(part) for part in parts)
    return hashlib.sha256(key_string.encode()).hexdigest()


def normalize_outbound_text(text: str) -> str:
    """Normalize message text for duplicate comparison.

    Unwraps ``{"reply": "..."}`` payloads that generators sometimes return,
    then lowercases, trims and collapses whitespace.
    """
    stripped = text.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict) and isinstance(parsed.get("reply"), str):
            stripped = parsed["reply"]
    return _WHITESPACE_RE.sub(" ", stripped.lower()).strip()


def content_hash(text: str) -> str:
    """sha256 of the normalized text."""
    return hashlib.sha256(normalize_outbound_text(text).encode()).hexdigest()


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance with a two-row table."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity_ratio(a: str, b: str) -> float:
    """Edit-distance similarity in [0, 1] on lowercased, trimmed text."""
    a = a.lower().strip()
    b = b.lower().strip()
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / longest


def synthesize_provider_message_id(address: str, text: str, received_at: datetime) -> str:
    """Build a stable message id for channels that do not supply one.

    Redeliveries of the same event within the same minute map to the same id.
    """
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=timezone.utc)
    bucket = int(received_at.timestamp()) // SYNTHETIC_ID_BUCKET_SECONDS
    return "syn_" + generate_idempotency_key(address, text, bucket)[:32]
