"""Reply drafting: LLM when available, deterministic templates otherwise.

Generation is best-effort. Any LLM failure, timeout or rejected draft falls
back to the template so dispatch is never blocked.
"""

import asyncio
import json
import logging
from dataclasses import dataclass

from app.llm.client import LLMClient
from app.settings import settings

logger = logging.getLogger(__name__)

TEMPLATES: dict[str, str] = {
    "ask_name": "Thanks for reaching out! May I have your full name, please?",
    "ask_service": "Which service are you interested in?",
    "ask_nationality": "Could you share your nationality, please?",
    "ask_email": "What is the best email address to reach you?",
    "ask_phone": "What is the best phone number to reach you?",
    "ask_field": "Could you share your {field}, please?",
    "confirm": "Thanks{name_part}! Just to confirm: {summary}. Is that correct?",
    "handover": "Thank you{name_part}! A member of our team will follow up with you shortly.",
    "follow_up": "Hi{name_part}, just checking in. Are you still interested in {service}?",
}


@dataclass
class Draft:
    """Generated reply text and where it came from."""

    text: str
    template_key: str
    source: str  # llm or template


def _summary(collected: dict[str, str]) -> str:
    return ", ".join(f"{key.replace('_', ' ')}: {value}" for key, value in collected.items())


def render_template(template_key: str, collected: dict[str, str], question_key: str | None = None) -> str:
    """Render a template with collected fields.

    Unknown ``ask_*`` keys use the generic field question.
    """
    template = TEMPLATES.get(template_key)
    if template is None:
        if template_key.startswith("ask_"):
            template = TEMPLATES["ask_field"]
            question_key = question_key or template_key[4:]
        else:
            raise KeyError(f"Unknown reply template: {template_key}")

    name = collected.get("name")
    return template.format(
        field=(question_key or "details").replace("_", " "),
        name_part=f" {name.split()[0]}" if name else "",
        summary=_summary(collected) or "your details",
        service=collected.get("service", "our services").replace("_", " "),
    )


class DraftGenerator:
    """Produces reply text for a planned action."""

    def __init__(self, llm_client: LLMClient | None = None) -> None:
        self.llm_client = llm_client

    def validate(self, text: str) -> str | None:
        """Return the cleaned draft, or None if it must not be sent."""
        cleaned = text.strip()
        if cleaned.startswith("{"):
            try:
                parsed = json.loads(cleaned)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict) and isinstance(parsed.get("reply"), str):
                cleaned = parsed["reply"].strip()

        if not cleaned or len(cleaned) > settings.draft_max_length:
            return None
        lowered = cleaned.lower()
        for phrase in settings.draft_forbidden_phrases:
            if phrase.lower() in lowered:
                logger.warning(f"Draft rejected: contains forbidden phrase '{phrase}'")
                return None
        return cleaned

    def _prompt(self, template_key: str, fallback: str, collected: dict[str, str], inbound_text: str | None) -> str:
        known = _summary(collected) or "nothing yet"
        return (
            "You write short, friendly customer-service chat replies.\n"
            f"Goal of this reply ({template_key}): {fallback}\n"
            f"What we know about the customer: {known}\n"
            f"Customer's last message: {inbound_text or ''}\n"
            "Reply in the customer's language, in at most two sentences. "
            "Ask only what the goal asks. Never promise outcomes.\n"
            'Respond as JSON: {"reply": "..."}'
        )

    async def generate(
        self,
        template_key: str,
        collected: dict[str, str],
        question_key: str | None = None,
        inbound_text: str | None = None,
    ) -> Draft:
        """Draft a reply.

        Args:
            template_key: Template for the planned action (e.g. ask_service)
            collected: Fields collected so far
            question_key: Field being asked for, if any
            inbound_text: Customer message being answered

        Returns:
            Draft; ``source`` is "template" whenever the LLM was skipped or failed
        """
        fallback = render_template(template_key, collected, question_key)
        if self.llm_client is None:
            return Draft(text=fallback, template_key=template_key, source="template")

        try:
            raw = await asyncio.wait_for(
                self.llm_client.generate(
                    self._prompt(template_key, fallback, collected, inbound_text),
                    {"temperature": 0.3, "max_tokens": 200},
                ),
                timeout=settings.draft_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Draft generation timed out for {template_key}, using template")
            return Draft(text=fallback, template_key=template_key, source="template")
        except Exception as e:
            logger.warning(f"Draft generation failed for {template_key}, using template: {e}")
            return Draft(text=fallback, template_key=template_key, source="template")

        text = self.validate(raw or "")
        if text is None:
            return Draft(text=fallback, template_key=template_key, source="template")
        return Draft(text=text, template_key=template_key, source="llm")
