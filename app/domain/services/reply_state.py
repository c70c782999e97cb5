"""Reply state machine: typed per-conversation state and pure transitions.

The state lives in ``Conversation.automation_memory`` as JSON and is only
ever handled as a ``ReplyState`` in memory. Transition functions work on a
copy and never touch storage.

Stages::

    COLLECTING --(all required fields present)--> CONFIRMING
    CONFIRMING --(affirmative reply)-------------> DONE

``stop`` is orthogonal: once enabled it halts automated replies from any
stage until an operator clears it.
"""

import copy
import enum
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from app.domain.services.field_extractor import ExtractedField

# Inbound ids remembered for replay detection
PROCESSED_ID_HISTORY = 50

# Confidence given to values the customer has confirmed
CONFIRMED = 1.0

_AFFIRMATIVE_RE = re.compile(
    r"^\s*(yes|yeah|yep|yup|correct|confirm(ed)?|that'?s (right|correct)|right|ok(ay)?|sure|exactly|perfect)\b",
    re.IGNORECASE,
)


class ReplyStage(str, enum.Enum):
    COLLECTING = "COLLECTING"
    CONFIRMING = "CONFIRMING"
    DONE = "DONE"


@dataclass
class StopFlag:
    """Sticky halt for automated replies."""

    enabled: bool = False
    reason: str | None = None
    set_at: datetime | None = None
    set_by: str | None = None  # operator, keyword, rule


@dataclass
class ReplyState:
    """Automated-reply progress for one conversation."""

    service_key: str | None = None
    stage: ReplyStage = ReplyStage.COLLECTING
    collected: dict[str, str] = field(default_factory=dict)
    confidence: dict[str, float] = field(default_factory=dict)
    required: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    next_question_key: str | None = None
    asked_question_keys: list[str] = field(default_factory=list)
    follow_up_step: int = 0
    last_inbound_message_id: str | None = None
    processed_inbound_ids: list[str] = field(default_factory=list)
    last_outbound_reply_key: str | None = None
    last_question: str | None = None
    last_question_at: datetime | None = None
    stop: StopFlag = field(default_factory=StopFlag)

    @property
    def is_stopped(self) -> bool:
        return self.stop.enabled

    def has_processed(self, inbound_message_id: str) -> bool:
        return (
            inbound_message_id == self.last_inbound_message_id
            or inbound_message_id in self.processed_inbound_ids
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-safe primitives."""
        return {
            "serviceKey": self.service_key,
            "stage": self.stage.value,
            "collected": dict(self.collected),
            "confidence": dict(self.confidence),
            "required": list(self.required),
            "missing": list(self.missing),
            "nextQuestionKey": self.next_question_key,
            "askedQuestionKeys": list(self.asked_question_keys),
            "followUpStep": self.follow_up_step,
            "lastInboundMessageId": self.last_inbound_message_id,
            "processedInboundIds": list(self.processed_inbound_ids),
            "lastOutboundReplyKey": self.last_outbound_reply_key,
            "lastQuestion": self.last_question,
            "lastQuestionAt": _iso(self.last_question_at),
            "stop": {
                "enabled": self.stop.enabled,
                "reason": self.stop.reason,
                "setAt": _iso(self.stop.set_at),
                "setBy": self.stop.set_by,
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ReplyState":
        """Load from stored JSON; missing or malformed keys take defaults."""
        if not data or not isinstance(data, dict):
            return cls()

        try:
            stage = ReplyStage(data.get("stage") or ReplyStage.COLLECTING.value)
        except ValueError:
            stage = ReplyStage.COLLECTING

        stop_data = data.get("stop") or {}
        if not isinstance(stop_data, dict):
            stop_data = {}

        return cls(
            service_key=data.get("serviceKey"),
            stage=stage,
            collected={str(k): str(v) for k, v in (data.get("collected") or {}).items()},
            confidence={str(k): float(v) for k, v in (data.get("confidence") or {}).items()},
            required=list(data.get("required") or []),
            missing=list(data.get("missing") or []),
            next_question_key=data.get("nextQuestionKey"),
            asked_question_keys=list(data.get("askedQuestionKeys") or []),
            follow_up_step=int(data.get("followUpStep") or 0),
            last_inbound_message_id=data.get("lastInboundMessageId"),
            processed_inbound_ids=list(data.get("processedInboundIds") or []),
            last_outbound_reply_key=data.get("lastOutboundReplyKey"),
            last_question=data.get("lastQuestion"),
            last_question_at=_parse_dt(data.get("lastQuestionAt")),
            stop=StopFlag(
                enabled=bool(stop_data.get("enabled", False)),
                reason=stop_data.get("reason"),
                set_at=_parse_dt(stop_data.get("setAt")),
                set_by=stop_data.get("setBy"),
            ),
        )


@dataclass
class Transition:
    """Result of applying an inbound message."""

    state: ReplyState
    processed: bool
    previous_stage: ReplyStage
    updated_fields: list[str] = field(default_factory=list)

    @property
    def stage_changed(self) -> bool:
        return self.state.stage != self.previous_stage


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def is_affirmative(text: str) -> bool:
    return bool(_AFFIRMATIVE_RE.match(text or ""))


def new_state(required: list[str], service_key: str | None = None) -> ReplyState:
    """Fresh COLLECTING state for the given required fields."""
    state = ReplyState(service_key=service_key, required=list(required), missing=list(required))
    state.next_question_key = select_next_question(state)
    return state


def merge_fields(state: ReplyState, extracted: dict[str, ExtractedField]) -> list[str]:
    """Merge extracted values into ``state`` in place.

    A value replaces an existing one only with equal or higher confidence,
    so confirmed values (confidence 1.0) are never overwritten by guesses.

    Returns:
        Names of fields whose value changed
    """
    updated: list[str] = []
    for name, candidate in extracted.items():
        current_confidence = state.confidence.get(name)
        if current_confidence is not None and candidate.confidence < current_confidence:
            continue
        if state.collected.get(name) == candidate.value:
            state.confidence[name] = max(candidate.confidence, current_confidence or 0.0)
            continue
        state.collected[name] = candidate.value
        state.confidence[name] = candidate.confidence
        updated.append(name)

    if "service" in state.collected and not state.service_key:
        state.service_key = state.collected["service"]
    return updated


def select_next_question(state: ReplyState) -> str | None:
    """First required-but-missing field that has not been asked yet."""
    for key in state.missing:
        if key not in state.asked_question_keys:
            return key
    return None


def apply_inbound(
    state: ReplyState,
    inbound_message_id: str,
    text: str,
    extracted: dict[str, ExtractedField],
    required: list[str] | None = None,
) -> Transition:
    """Apply one inbound message to a copy of ``state``.

    Replaying an already-processed inbound id returns the state unchanged
    with ``processed=False``.

    Args:
        state: Current state (not modified)
        inbound_message_id: Provider id of the inbound message
        text: Message text, used to detect confirmations
        extracted: Fields extracted from the text
        required: Required fields for the active service; keeps the
            state's own list when omitted

    Returns:
        Transition with the new state
    """
    previous_stage = state.stage
    if state.has_processed(inbound_message_id):
        return Transition(state=state, processed=False, previous_stage=previous_stage)

    new = copy.deepcopy(state)
    if required is not None:
        new.required = list(required)

    updated = merge_fields(new, extracted)
    new.missing = [key for key in new.required if key not in new.collected]

    if new.stage == ReplyStage.COLLECTING and not new.missing:
        new.stage = ReplyStage.CONFIRMING
    elif new.stage == ReplyStage.CONFIRMING:
        if new.missing:
            new.stage = ReplyStage.COLLECTING
        elif not updated and is_affirmative(text):
            new.stage = ReplyStage.DONE
            for key in new.collected:
                new.confidence[key] = CONFIRMED

    new.next_question_key = select_next_question(new) if new.stage == ReplyStage.COLLECTING else None

    new.last_inbound_message_id = inbound_message_id
    new.processed_inbound_ids = (new.processed_inbound_ids + [inbound_message_id])[-PROCESSED_ID_HISTORY:]

    return Transition(state=new, processed=True, previous_stage=previous_stage, updated_fields=updated)


def mark_processed(state: ReplyState, inbound_message_id: str) -> ReplyState:
    """Record an inbound id on a copy of ``state`` without other changes."""
    new = copy.deepcopy(state)
    if not new.has_processed(inbound_message_id):
        new.last_inbound_message_id = inbound_message_id
        new.processed_inbound_ids = (new.processed_inbound_ids + [inbound_message_id])[-PROCESSED_ID_HISTORY:]
    return new


def record_reply(
    state: ReplyState,
    reply_key: str,
    question_key: str | None,
    question_text: str | None,
    at: datetime,
) -> ReplyState:
    """Record an emitted reply on a copy of ``state``."""
    new = copy.deepcopy(state)
    if question_key and question_key not in new.asked_question_keys:
        new.asked_question_keys.append(question_key)
    new.follow_up_step += 1
    new.last_outbound_reply_key = reply_key
    if question_text:
        new.last_question = question_text
        new.last_question_at = at
    return new


def was_recently_asked(state: ReplyState, question_text: str, now: datetime, minutes: int) -> bool:
    """True if the same question text went out within the last ``minutes``."""
    if not state.last_question or not state.last_question_at:
        return False
    if state.last_question.strip().lower() != question_text.strip().lower():
        return False
    return now - state.last_question_at < timedelta(minutes=minutes)


def set_stop(state: ReplyState, reason: str, at: datetime, set_by: str = "operator") -> ReplyState:
    """Enable the stop flag. An existing stop keeps its original reason."""
    new = copy.deepcopy(state)
    if not new.stop.enabled:
        new.stop = StopFlag(enabled=True, reason=reason, set_at=at, set_by=set_by)
    return new


def clear_stop(state: ReplyState) -> ReplyState:
    new = copy.deepcopy(state)
    new.stop = StopFlag()
    return new
