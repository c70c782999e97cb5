"""Deterministic field extraction from inbound message text.

Rules only, no LLM. Each hit carries a confidence so the reply state can
decide whether it may replace a value it already holds.
"""

import re
from dataclasses import dataclass

from app.settings import settings

EXPLICIT = 0.9
INFERRED = 0.6

_NAME_WORD = r"[A-Z][a-zA-Z'\-]+"

_EXPLICIT_NAME_PATTERN = re.compile(
    r"(?:my name is|my name's|call me|name\s*[:\-])\s+([A-Za-z][A-Za-z'\-]*(?:\s+[A-Za-z][A-Za-z'\-]*){0,3})",
    re.IGNORECASE,
)
_INTRO_NAME_PATTERN = re.compile(
    rf"(?i:\bi am|\bi'm|\bim|\bthis is)\s+({_NAME_WORD}(?:\s+{_NAME_WORD}){{0,3}})"
)
_BARE_NAME_PATTERN = re.compile(rf"^\s*({_NAME_WORD}(?:\s+{_NAME_WORD}){{1,3}})\s*[.!]?\s*$")

_EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}")
_PHONE_PATTERN = re.compile(r"(?<!\w)\+?\d[\d\s\-()]{7,16}\d")

_NATIONALITY_PATTERNS = [
    re.compile(r"nationality\s*(?:is|:|-)?\s*([A-Za-z]+)", re.IGNORECASE),
    re.compile(r"\bi(?:'m| am)\s+(?:an?\s+)?([A-Za-z]+)\s+(?:national|citizen)\b", re.IGNORECASE),
    re.compile(r"\b([A-Za-z]+)\s+passport\b", re.IGNORECASE),
]

DEMONYMS = frozenset({
    "american", "australian", "bangladeshi", "british", "canadian", "chinese",
    "egyptian", "emirati", "filipino", "french", "german", "indian", "iranian",
    "italian", "jordanian", "kenyan", "lebanese", "nigerian", "pakistani",
    "russian", "saudi", "somali", "spanish", "sri lankan", "sudanese", "syrian",
    "turkish", "ukrainian",
})

# Words that follow "I am" but are not names
_NOT_NAMES = frozenset({
    "interested", "looking", "here", "from", "not", "good", "fine", "ok", "okay",
    "ready", "available", "busy", "sorry", "still", "also", "just", "new",
    "hello", "hi", "hey", "thanks", "thank", "yes", "no", "please",
})

# Words that end a name captured after "my name is"
_NAME_STOP_WORDS = frozenset({
    "and", "i", "im", "i'm", "from", "need", "want", "looking", "interested",
    "with", "for", "the", "a", "my", "is", "here", "please", "thanks",
})


@dataclass(frozen=True)
class ExtractedField:
    """A single extracted value."""

    value: str
    confidence: float


class FieldExtractor:
    """Extracts name, email, phone, service and nationality from text."""

    def __init__(self, service_keywords: dict[str, list[str]] | None = None) -> None:
        self.service_keywords = service_keywords if service_keywords is not None else settings.service_keywords

    def extract(self, text: str) -> dict[str, ExtractedField]:
        """Extract all recognisable fields.

        Args:
            text: Inbound message text

        Returns:
            Map of field name to extracted value
        """
        if not text or not text.strip():
            return {}

        fields: dict[str, ExtractedField] = {}

        name = self.extract_name(text)
        if name:
            fields["name"] = name

        email = _EMAIL_PATTERN.search(text)
        if email:
            fields["email"] = ExtractedField(email.group(0).lower(), EXPLICIT)

        phone = _PHONE_PATTERN.search(text)
        if phone:
            digits = re.sub(r"[^\d+]", "", phone.group(0))
            if 8 <= len(digits.lstrip("+")) <= 15:
                fields["phone"] = ExtractedField(digits, EXPLICIT)

        service = self.extract_service(text)
        if service:
            fields["service"] = service

        nationality = self.extract_nationality(text)
        if nationality:
            fields["nationality"] = nationality

        return fields

    def extract_name(self, text: str) -> ExtractedField | None:
        match = _EXPLICIT_NAME_PATTERN.search(text)
        if match:
            words = []
            for word in match.group(1).split():
                if word.lower() in _NAME_STOP_WORDS:
                    break
                words.append(word)
            if words:
                return ExtractedField(" ".join(w[:1].upper() + w[1:] for w in words), EXPLICIT)

        match = _INTRO_NAME_PATTERN.search(text)
        if match:
            name = match.group(1).strip()
            first = name.split()[0]
            # "I'm Indian", "this is URGENT"
            if first.lower() not in _NOT_NAMES and first.lower() not in DEMONYMS and not first.isupper():
                return ExtractedField(name, EXPLICIT)

        match = _BARE_NAME_PATTERN.match(text)
        if match:
            name = match.group(1).strip()
            if not any(word.lower() in _NOT_NAMES or word.lower() in DEMONYMS for word in name.split()):
                return ExtractedField(name, INFERRED)
        return None

    def extract_service(self, text: str) -> ExtractedField | None:
        """Match the first configured service whose keyword appears in the text."""
        lowered = text.lower()
        for service_key, keywords in self.service_keywords.items():
            if service_key.replace("_", " ") in lowered:
                return ExtractedField(service_key, EXPLICIT)
            for keyword in keywords:
                if keyword.lower() in lowered:
                    return ExtractedField(service_key, INFERRED)
        return None

    def extract_nationality(self, text: str) -> ExtractedField | None:
        for pattern in _NATIONALITY_PATTERNS:
            match = pattern.search(text)
            if match:
                candidate = match.group(1).lower()
                if candidate in DEMONYMS:
                    return ExtractedField(candidate.title(), EXPLICIT)

        lowered = text.lower()
        for demonym in sorted(DEMONYMS):
            if re.search(rf"\b{re.escape(demonym)}\b", lowered):
                return ExtractedField(demonym.title(), INFERRED)
        return None
