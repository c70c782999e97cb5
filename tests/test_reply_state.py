"""Tests for reply state transitions."""

from datetime import datetime, timedelta

import pytest

from app.domain.services.field_extractor import EXPLICIT, INFERRED, ExtractedField, FieldExtractor
from app.domain.services.reply_state import (
    ReplyStage,
    ReplyState,
    apply_inbound,
    clear_stop,
    mark_processed,
    new_state,
    record_reply,
    set_stop,
    was_recently_asked,
)

NOW = datetime(2026, 3, 1, 10, 0)


class TestApplyInbound:
    """Collecting, confirming and done."""

    def test_name_supplied_moves_to_next_question(self):
        state = new_state(["name", "service"])

        transition = apply_inbound(state, "m1", "My name is John Smith", {"name": ExtractedField("John Smith", EXPLICIT)})

        assert transition.processed is True
        assert transition.state.stage == ReplyStage.COLLECTING
        assert transition.state.collected == {"name": "John Smith"}
        assert transition.state.missing == ["service"]
        assert transition.state.next_question_key == "service"
        assert transition.updated_fields == ["name"]
        assert state.collected == {}

    def test_all_fields_present_moves_to_confirming(self):
        state = new_state(["name", "service"])

        transition = apply_inbound(state, "m1", "John Smith, visa please", {
            "name": ExtractedField("John Smith", EXPLICIT),
            "service": ExtractedField("visa", EXPLICIT),
        })

        assert transition.state.stage == ReplyStage.CONFIRMING
        assert transition.stage_changed is True
        assert transition.state.next_question_key is None

    def test_affirmative_reply_confirms(self):
        state = new_state(["name"])
        confirming = apply_inbound(state, "m1", "", {"name": ExtractedField("John Smith", INFERRED)}).state

        done = apply_inbound(confirming, "m2", "Yes, that's right", {}).state

        assert done.stage == ReplyStage.DONE
        assert done.confidence["name"] == 1.0

    def test_correction_while_confirming_does_not_confirm(self):
        state = new_state(["name"])
        confirming = apply_inbound(state, "m1", "", {"name": ExtractedField("Jon Smith", INFERRED)}).state

        transition = apply_inbound(confirming, "m2", "Yes, my name is John Smith", {
            "name": ExtractedField("John Smith", EXPLICIT),
        })

        assert transition.state.stage == ReplyStage.CONFIRMING
        assert transition.state.collected["name"] == "John Smith"

    def test_replayed_inbound_is_ignored(self):
        state = new_state(["name", "service"])
        after = apply_inbound(state, "m1", "", {"name": ExtractedField("John Smith", EXPLICIT)}).state

        replay = apply_inbound(after, "m1", "", {"name": ExtractedField("Someone Else", EXPLICIT)})

        assert replay.processed is False
        assert replay.state is after
        assert replay.state.collected["name"] == "John Smith"

    def test_lower_confidence_never_overwrites(self):
        state = new_state(["name", "service"])
        state = apply_inbound(state, "m1", "", {"name": ExtractedField("John Smith", EXPLICIT)}).state

        transition = apply_inbound(state, "m2", "", {"name": ExtractedField("Visa Please", INFERRED)})

        assert transition.state.collected["name"] == "John Smith"
        assert transition.updated_fields == []

    def test_asked_questions_are_not_reselected(self):
        state = new_state(["name", "service"])
        state = record_reply(state, "key-1", "name", "May I have your name?", NOW)

        transition = apply_inbound(state, "m1", "hello", {})

        assert transition.state.next_question_key == "service"


class TestSerialization:
    """JSON round trip of the stored blob."""

    def test_to_dict_and_back(self):
        state = new_state(["name", "service"], service_key="visa")
        state = record_reply(state, "key-1", "name", "May I have your name?", NOW)
        state = set_stop(state, "asked for a human", NOW, set_by="keyword")

        loaded = ReplyState.from_dict(state.to_dict())

        assert loaded == state

    def test_malformed_blob_gives_defaults(self):
        loaded = ReplyState.from_dict({"stage": "SOMETHING", "stop": "yes"})

        assert loaded.stage == ReplyStage.COLLECTING
        assert loaded.is_stopped is False


class TestStopAndReplies:
    """Stop flag and reply bookkeeping."""

    def test_stop_keeps_original_reason(self):
        state = set_stop(ReplyState(), "first", NOW)
        state = set_stop(state, "second", NOW + timedelta(minutes=1))

        assert state.stop.reason == "first"
        assert clear_stop(state).is_stopped is False

    def test_mark_processed_only_records_id(self):
        state = new_state(["name"])

        marked = mark_processed(state, "m9")

        assert marked.has_processed("m9")
        assert marked.collected == state.collected
        assert not state.has_processed("m9")

    def test_record_reply_advances_follow_up_step(self):
        state = record_reply(ReplyState(), "key-1", "name", "May I have your name?", NOW)

        assert state.follow_up_step == 1
        assert state.asked_question_keys == ["name"]
        assert state.last_outbound_reply_key == "key-1"

    def test_recently_asked_window(self):
        state = record_reply(ReplyState(), "key-1", "name", "May I have your name?", NOW)

        assert was_recently_asked(state, "may i have your name? ", NOW + timedelta(minutes=2), 3) is True
        assert was_recently_asked(state, "May I have your name?", NOW + timedelta(minutes=4), 3) is False
        assert was_recently_asked(state, "Which service?", NOW, 3) is False


class TestFieldExtractor:
    """Rule-based extraction."""

    def test_explicit_name_and_service(self):
        fields = FieldExtractor().extract("Hi, my name is sara khan and I need a work permit")

        assert fields["name"] == ExtractedField("Sara Khan", EXPLICIT)
        assert fields["service"] == ExtractedField("visa", INFERRED)

    def test_bare_name_is_inferred(self):
        assert FieldExtractor().extract("John Smith")["name"] == ExtractedField("John Smith", INFERRED)

    def test_email_phone_and_nationality(self):
        fields = FieldExtractor().extract("I am an Indian national, mail me at Raj@Example.com or +971 50 123 4567")

        assert fields["email"].value == "raj@example.com"
        assert fields["phone"].value == "+971501234567"
        assert fields["nationality"] == ExtractedField("Indian", EXPLICIT)

    def test_greeting_is_not_a_name(self):
        assert "name" not in FieldExtractor().extract("Hello there")

    @pytest.mark.parametrize("text,expected", [
        ("I am Ahmed", "Ahmed"),
        ("This is John", "John"),
        ("Hi, I'm Sara", "Sara"),
        ("I am Omar Farouk from Dubai", "Omar Farouk"),
    ])
    def test_introduced_name(self, text, expected):
        assert FieldExtractor().extract(text)["name"] == ExtractedField(expected, EXPLICIT)

    @pytest.mark.parametrize("text", ["I am Interested in a visa", "I'm Indian", "this is URGENT"])
    def test_intro_without_a_name(self, text):
        assert "name" not in FieldExtractor().extract(text)
