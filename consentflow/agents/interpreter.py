"""Custom text interpreter for the "Other" options in the wizard.

When a user describes an encounter type or a set of acts in their own
words, this module maps the text onto the known options using a hybrid
approach:
1. Deterministic keyword matching with confidence scoring (fast, no LLM cost)
2. LLM fallback for ambiguous cases (when confidence < 0.8)
"""

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from dotenv import load_dotenv
from openai import OpenAI

from consentflow.wizard.flow_state import ENCOUNTER_TYPES, INTIMATE_ACT_OPTIONS


# Load environment variables
load_dotenv()

# API Configuration
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or None
INTERPRETER_MODEL = os.getenv("INTERPRETER_MODEL", "gpt-4o-mini")
MAX_TOKENS = 500

# Confidence threshold for deterministic interpretation
CONFIDENCE_THRESHOLD = 0.8

# User text is truncated before interpretation
MAX_TEXT_LENGTH = 1000

ENCOUNTER_TYPE_CONTEXT = "encounterType"
INTIMATE_ACTS_CONTEXT = "intimateActs"
CONTEXTS = (ENCOUNTER_TYPE_CONTEXT, INTIMATE_ACTS_CONTEXT)

OTHER_ACTS = "Other Acts (Specify in Contract)"


@dataclass
class InterpretationResult:
    """Result of interpreting custom text.

    Attributes:
        context: "encounterType" or "intimateActs"
        confidence: Confidence score (0.0 to 1.0)
        method: "deterministic" or "llm"
        suggested_type: Encounter type value (encounterType context)
        label: Short label for the encounter (encounterType context)
        suggested_acts: Known act names (intimateActs context)
        custom_description: Leftover description (intimateActs context)
    """
    context: str
    confidence: float
    method: Literal["deterministic", "llm"]
    suggested_type: Optional[str] = None
    label: Optional[str] = None
    suggested_acts: List[str] = field(default_factory=list)
    custom_description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        if self.context == ENCOUNTER_TYPE_CONTEXT:
            data: Dict[str, Any] = {
                "suggestedType": self.suggested_type,
                "label": self.label,
            }
        else:
            data = {
                "suggestedActs": list(self.suggested_acts),
                "customDescription": self.custom_description,
            }
        data.update({"confidence": self.confidence, "method": self.method})
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data


class InterpretationError(Exception):
    """Exception raised when interpretation fails."""
    pass


# ============================================================================
# Deterministic Keyword Rules
# ============================================================================

ENCOUNTER_KEYWORDS: Dict[str, List[str]] = {
    "intimate": [
        r"\bsex(ual)?\b",
        r"\bintima(te|cy)\b",
        r"\bhook\s*up\b",
        r"\bsleep(ing)?\s+together\b",
        r"\bmake\s+out\b",
    ],
    "date": [
        r"\bdate\b",
        r"\bdinner\b",
        r"\bmovies?\b",
        r"\bromantic\b",
        r"\bdrinks\b",
    ],
    "conversation": [
        r"\bconversation\b",
        r"\btalk(ing)?\b",
        r"\bchat\b",
        r"\bdiscuss(ion)?\b",
        r"\binterview\s+recording\b",
    ],
    "medical": [
        r"\bdoctor\b",
        r"\bmedical\b",
        r"\bclinic\b",
        r"\bexam(ination)?\b",
        r"\btherap(y|ist)\b",
        r"\bpatient\b",
    ],
    "professional": [
        r"\bmeeting\b",
        r"\bbusiness\b",
        r"\bwork\b",
        r"\bclient\b",
        r"\bphoto\s*shoot\b",
        r"\bprofessional\b",
    ],
}

ACT_KEYWORDS: Dict[str, List[str]] = {
    "Touching/Caressing": [r"\btouch(ing)?\b", r"\bcaress(ing)?\b", r"\bcuddl(e|ing)\b", r"\bmassage\b"],
    "Kissing": [r"\bkiss(ing|es)?\b", r"\bmak(e|ing)\s+out\b"],
    "Manual Stimulation": [r"\bmanual\b", r"\bhand\s*job\b", r"\bfinger(ing)?\b"],
    "Oral Stimulation": [r"\boral\s+stimulation\b", r"\blick(ing)?\b"],
    "Oral Intercourse": [r"\boral\s+(sex|intercourse)\b", r"\bblow\s*job\b", r"\bgo(ing)?\s+down\b"],
    "Penetrative Intercourse": [r"\bpenetrat(ive|ion)\b", r"\bintercourse\b", r"\bsex\b"],
    "Photography/Video Recording": [r"\bphoto(s|graph\w*)?\b", r"\bvideo\b", r"\brecord(ing)?\b", r"\bfilm(ing)?\b"],
}


def prepare_text(text: Optional[str]) -> str:
    """Trim and truncate user text.

    Raises:
        ValueError: If the text is empty after trimming
    """
    cleaned = (text or "").strip()
    if not cleaned:
        raise ValueError("Text to interpret must not be empty")
    return cleaned[:MAX_TEXT_LENGTH]


def _count_hits(patterns: List[str], text: str) -> int:
    return sum(1 for pattern in patterns if re.search(pattern, text, re.IGNORECASE))


def calculate_confidence(best_hits: int, runner_up_hits: int) -> float:
    """Score a keyword match.

    Two or more distinct keywords for a single winner is strong evidence;
    a single keyword is accepted only when no other option matched.
    """
    if best_hits == 0:
        return 0.0
    if best_hits == runner_up_hits:
        return 0.5
    if best_hits >= 2:
        return 0.9
    if runner_up_hits == 0:
        return 0.8
    return 0.6


def interpret_encounter_deterministic(text: str) -> InterpretationResult:
    hits = {
        encounter: _count_hits(patterns, text)
        for encounter, patterns in ENCOUNTER_KEYWORDS.items()
    }
    ranked = sorted(hits.items(), key=lambda item: item[1], reverse=True)
    best_type, best_hits = ranked[0]
    runner_up_hits = ranked[1][1] if len(ranked) > 1 else 0

    if best_hits == 0:
        return InterpretationResult(
            context=ENCOUNTER_TYPE_CONTEXT,
            confidence=0.0,
            method="deterministic",
            suggested_type="other",
            label=text[:40],
        )

    return InterpretationResult(
        context=ENCOUNTER_TYPE_CONTEXT,
        confidence=calculate_confidence(best_hits, runner_up_hits),
        method="deterministic",
        suggested_type=best_type,
        label=ENCOUNTER_TYPES[best_type],
        metadata={"keyword_hits": {k: v for k, v in hits.items() if v}},
    )


def interpret_acts_deterministic(text: str) -> InterpretationResult:
    matched = [act for act, patterns in ACT_KEYWORDS.items() if _count_hits(patterns, text)]

    # "oral sex" should not also count as penetrative sex
    if "Oral Intercourse" in matched and not re.search(
        r"\bpenetrat|\bintercourse\b(?<!oral intercourse)", text, re.IGNORECASE
    ):
        matched = [act for act in matched if act != "Penetrative Intercourse"]

    if not matched:
        return InterpretationResult(
            context=INTIMATE_ACTS_CONTEXT,
            confidence=0.0,
            method="deterministic",
            suggested_acts=[OTHER_ACTS],
            custom_description=text[:200],
        )

    return InterpretationResult(
        context=INTIMATE_ACTS_CONTEXT,
        confidence=0.85,
        method="deterministic",
        suggested_acts=matched,
        custom_description=None,
    )


def interpret_deterministic(text: str, context: str) -> InterpretationResult:
    if context == ENCOUNTER_TYPE_CONTEXT:
        return interpret_encounter_deterministic(text)
    return interpret_acts_deterministic(text)


# ============================================================================
# LLM Fallback Interpretation
# ============================================================================

def load_interpreter_prompt(context: str) -> str:
    """Load the system prompt for a context from the prompts directory.

    Raises:
        FileNotFoundError: If prompt file doesn't exist
    """
    name = "interpret_encounter_type.md" if context == ENCOUNTER_TYPE_CONTEXT else "interpret_intimate_acts.md"
    prompt_path = Path(__file__).parent / "prompts" / name

    if not prompt_path.exists():
        raise FileNotFoundError(f"Interpreter prompt not found: {prompt_path}")

    return prompt_path.read_text(encoding="utf-8")


def _strip_code_fence(response_text: str) -> str:
    if "```json" in response_text:
        json_match = re.search(r"```json\s*\n(.*?)\n```", response_text, re.DOTALL)
        if json_match:
            return json_match.group(1)
    elif "```" in response_text:
        json_match = re.search(r"```\s*\n(.*?)\n```", response_text, re.DOTALL)
        if json_match:
            return json_match.group(1)
    return response_text


def interpret_with_llm(text: str, context: str) -> InterpretationResult:
    """Interpret text using the LLM fallback.

    Raises:
        InterpretationError: If the API key is missing or the call fails
    """
    if not OPENAI_API_KEY:
        raise InterpretationError(
            "OPENAI_API_KEY environment variable not set. "
            "Cannot use LLM fallback interpretation."
        )

    system_prompt = load_interpreter_prompt(context)
    user_message = f"""Interpret this description:

```text
{text}
```

Return your answer as a JSON object following the output format specified in the system prompt."""

    client = OpenAI(api_key=OPENAI_API_KEY, base_url=OPENAI_BASE_URL)

    try:
        response = client.chat.completions.create(
            model=INTERPRETER_MODEL,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            temperature=0.1,
            max_tokens=MAX_TOKENS,
            response_format={"type": "json_object"},
        )
        response_text = _strip_code_fence(response.choices[0].message.content.strip())
        result_data = json.loads(response_text)
    except Exception as e:
        raise InterpretationError(f"LLM interpretation failed: {e}")

    if not isinstance(result_data, dict):
        raise InterpretationError("LLM interpretation returned a non-object response")

    confidence = result_data.get("confidence", 0.0)
    confidence = float(confidence) if isinstance(confidence, (int, float)) else 0.0

    if context == ENCOUNTER_TYPE_CONTEXT:
        suggested = result_data.get("suggestedType")
        if suggested not in ENCOUNTER_TYPES:
            suggested = "other"
        label = result_data.get("label")
        return InterpretationResult(
            context=context,
            confidence=confidence,
            method="llm",
            suggested_type=suggested,
            label=str(label)[:40] if label else ENCOUNTER_TYPES[suggested],
        )

    acts = result_data.get("suggestedActs") or []
    known = [a for a in acts if isinstance(a, str) and a in INTIMATE_ACT_OPTIONS]
    description = result_data.get("customDescription")
    return InterpretationResult(
        context=context,
        confidence=confidence,
        method="llm",
        suggested_acts=known,
        custom_description=str(description)[:200] if description else None,
    )


# ============================================================================
# Main Interpretation Function
# ============================================================================

def interpret_custom_text(text: str, context: str) -> InterpretationResult:
    """Interpret custom text using the hybrid approach.

    Process:
    1. Attempt deterministic keyword matching with confidence scoring
    2. If confidence >= 0.8, return the deterministic result
    3. Otherwise fall back to the LLM, unless INTERPRETER_DISABLE_LLM is set

    Raises:
        ValueError: If the context is unknown or the text is empty
    """
    if context not in CONTEXTS:
        raise ValueError(f"Unknown interpretation context: {context!r}")
    cleaned = prepare_text(text)

    deterministic_result = interpret_deterministic(cleaned, context)
    if deterministic_result.confidence >= CONFIDENCE_THRESHOLD:
        return deterministic_result

    llm_disabled = os.getenv("INTERPRETER_DISABLE_LLM", "").lower() in {"1", "true", "yes"}
    if llm_disabled:
        return deterministic_result

    try:
        return interpret_with_llm(cleaned, context)
    except InterpretationError as e:
        # Low-confidence deterministic result is better than nothing
        deterministic_result.metadata["llm_fallback_failed"] = str(e)
        return deterministic_result
