"""Tests for the custom text interpreter (deterministic rules and LLM fallback)."""

from __future__ import annotations

import os
from types import SimpleNamespace

import pytest

from consentflow.agents import interpreter
from consentflow.agents.interpreter import (
    ENCOUNTER_TYPE_CONTEXT,
    INTIMATE_ACTS_CONTEXT,
    OTHER_ACTS,
    InterpretationError,
    InterpretationResult,
    calculate_confidence,
    interpret_acts_deterministic,
    interpret_custom_text,
    interpret_encounter_deterministic,
    interpret_with_llm,
    load_interpreter_prompt,
)


@pytest.fixture
def no_llm(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("INTERPRETER_DISABLE_LLM", "1")


class FakeCompletions:
    def __init__(self, content: str) -> None:
        self.content = content
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_openai(content: str):
    completions = FakeCompletions(content)

    class FakeOpenAI:
        def __init__(self, api_key=None, base_url=None):
            self.chat = SimpleNamespace(completions=completions)

    return FakeOpenAI, completions


class TestConfidence:
    @pytest.mark.parametrize(
        "best, runner_up, expected",
        [(0, 0, 0.0), (1, 1, 0.5), (2, 1, 0.9), (1, 0, 0.8), (3, 3, 0.5)],
    )
    def test_scores(self, best, runner_up, expected):
        assert calculate_confidence(best, runner_up) == expected


class TestDeterministicEncounter:
    def test_two_keywords_are_confident(self):
        result = interpret_encounter_deterministic("Dinner and a movie downtown")
        assert result.suggested_type == "date"
        assert result.label == "Date"
        assert result.confidence == 0.9

    def test_single_unambiguous_keyword(self):
        result = interpret_encounter_deterministic("checkup with my doctor")
        assert result.suggested_type == "medical"
        assert result.confidence == 0.8

    def test_tie_is_ambiguous(self):
        result = interpret_encounter_deterministic("business dinner")
        assert result.confidence == 0.5

    def test_no_match_suggests_other(self):
        result = interpret_encounter_deterministic("coffee")
        assert result.suggested_type == "other"
        assert result.confidence == 0.0


class TestDeterministicActs:
    def test_oral_sex_does_not_imply_penetration(self):
        result = interpret_acts_deterministic("kissing and oral sex")
        assert result.suggested_acts == ["Kissing", "Oral Intercourse"]
        assert result.confidence == 0.85

    def test_explicit_penetration_is_kept(self):
        result = interpret_acts_deterministic("oral sex and penetration")
        assert "Penetrative Intercourse" in result.suggested_acts

    def test_unmatched_text_becomes_other_acts(self):
        result = interpret_acts_deterministic("tickling")
        assert result.suggested_acts == [OTHER_ACTS]
        assert result.custom_description == "tickling"
        assert result.confidence == 0.0


class TestInterpretCustomText:
    def test_rejects_unknown_context_and_empty_text(self, no_llm):
        with pytest.raises(ValueError):
            interpret_custom_text("dinner", "mood")
        with pytest.raises(ValueError):
            interpret_custom_text("   ", ENCOUNTER_TYPE_CONTEXT)

    def test_confident_result_skips_llm(self, monkeypatch):
        def fail(*args, **kwargs):
            raise AssertionError("LLM should not be called")

        monkeypatch.delenv("INTERPRETER_DISABLE_LLM", raising=False)
        monkeypatch.setattr(interpreter, "interpret_with_llm", fail)

        result = interpret_custom_text("dinner and drinks", ENCOUNTER_TYPE_CONTEXT)
        assert result.method == "deterministic"

    def test_disabled_llm_returns_low_confidence_result(self, no_llm):
        result = interpret_custom_text("coffee", ENCOUNTER_TYPE_CONTEXT)
        assert result.method == "deterministic"
        assert result.suggested_type == "other"

    def test_ambiguous_text_falls_back_to_llm(self, monkeypatch):
        llm_result = InterpretationResult(
            context=ENCOUNTER_TYPE_CONTEXT, confidence=0.9, method="llm", suggested_type="date", label="Coffee date"
        )
        monkeypatch.delenv("INTERPRETER_DISABLE_LLM", raising=False)
        monkeypatch.setattr(interpreter, "interpret_with_llm", lambda text, context: llm_result)

        assert interpret_custom_text("coffee", ENCOUNTER_TYPE_CONTEXT) is llm_result

    def test_llm_failure_keeps_deterministic_result(self, monkeypatch):
        def broken(text, context):
            raise InterpretationError("timeout")

        monkeypatch.delenv("INTERPRETER_DISABLE_LLM", raising=False)
        monkeypatch.setattr(interpreter, "interpret_with_llm", broken)

        result = interpret_custom_text("tickling", INTIMATE_ACTS_CONTEXT)
        assert result.suggested_acts == [OTHER_ACTS]
        assert result.metadata["llm_fallback_failed"] == "timeout"

    def test_long_text_is_truncated(self, no_llm):
        result = interpret_custom_text("x" * 5000, INTIMATE_ACTS_CONTEXT)
        assert len(result.custom_description) <= 200

    def test_to_dict_shapes(self):
        encounter = InterpretationResult(
            context=ENCOUNTER_TYPE_CONTEXT, confidence=0.8, method="deterministic", suggested_type="medical", label="x"
        )
        acts = InterpretationResult(
            context=INTIMATE_ACTS_CONTEXT, confidence=0.85, method="deterministic", suggested_acts=["Kissing"]
        )
        assert set(encounter.to_dict()) == {"suggestedType", "label", "confidence", "method"}
        assert set(acts.to_dict()) == {"suggestedActs", "customDescription", "confidence", "method"}


class TestLLMPath:
    def test_prompts_exist(self):
        assert "suggestedType" in load_interpreter_prompt(ENCOUNTER_TYPE_CONTEXT)
        assert "suggestedActs" in load_interpreter_prompt(INTIMATE_ACTS_CONTEXT)

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.setattr(interpreter, "OPENAI_API_KEY", None)
        with pytest.raises(InterpretationError):
            interpret_with_llm("coffee", ENCOUNTER_TYPE_CONTEXT)

    def test_response_is_parsed_and_sanitized(self, monkeypatch):
        fake, completions = fake_openai('```json\n{"suggestedType": "party", "label": "Board games", "confidence": 0.7}\n```')
        monkeypatch.setattr(interpreter, "OPENAI_API_KEY", "test-key")
        monkeypatch.setattr(interpreter, "OpenAI", fake)

        result = interpret_with_llm("board game night", ENCOUNTER_TYPE_CONTEXT)

        assert result.method == "llm"
        assert result.suggested_type == "other"
        assert result.label == "Board games"
        assert result.confidence == 0.7
        assert completions.calls[0]["model"] == interpreter.INTERPRETER_MODEL

    def test_unknown_acts_are_dropped(self, monkeypatch):
        fake, _ = fake_openai('{"suggestedActs": ["Kissing", "Juggling"], "customDescription": "juggling", "confidence": 0.6}')
        monkeypatch.setattr(interpreter, "OPENAI_API_KEY", "test-key")
        monkeypatch.setattr(interpreter, "OpenAI", fake)

        result = interpret_with_llm("kissing while juggling", INTIMATE_ACTS_CONTEXT)

        assert result.suggested_acts == ["Kissing"]
        assert result.custom_description == "juggling"

    def test_invalid_json_raises(self, monkeypatch):
        fake, _ = fake_openai("not json at all")
        monkeypatch.setattr(interpreter, "OPENAI_API_KEY", "test-key")
        monkeypatch.setattr(interpreter, "OpenAI", fake)
        with pytest.raises(InterpretationError):
            interpret_with_llm("coffee", ENCOUNTER_TYPE_CONTEXT)


@pytest.mark.integration
def test_llm_interpretation_executes() -> None:
    """Calls the real OpenAI API for an ambiguous description."""
    if os.getenv("RUN_LLM_TESTS", "").lower() not in {"1", "true", "yes"}:
        pytest.skip("Set RUN_LLM_TESTS=1 to enable real API call.")

    if not os.getenv("OPENAI_API_KEY"):
        pytest.skip("OPENAI_API_KEY not set.")

    result = interpret_with_llm("grabbing coffee and walking by the lake", ENCOUNTER_TYPE_CONTEXT)

    assert result.method == "llm"
    assert 0.0 <= result.confidence <= 1.0
    assert result.suggested_type in {"intimate", "date", "conversation", "medical", "professional", "other"}
