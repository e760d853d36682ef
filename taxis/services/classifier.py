"""Relationship classification between two clinical concepts."""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from taxis.core.exceptions import APIClientError, ModelUnavailableError
from taxis.core.llm_client import ChatCompletionClient
from taxis.utils.logging import get_logger

LOGGER = get_logger(__name__)

DEFAULT_RELATIONSHIP_CODE = 11

RELATIONSHIP_TYPES: Dict[int, str] = {
    1: "A causes B",
    2: "B causes A",
    3: "A indirectly causes B",
    4: "B indirectly causes A",
    5: "A and B share common cause",
    6: "Treatment of A causes B",
    7: "Treatment of B causes A",
    8: "A and B have similar initial presentations",
    9: "A is subset of B",
    10: "B is subset of A",
    11: "No clear relationship",
}

_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")

PROMPT_TEMPLATE = (
    "You are an expert diagnostician skilled at identifying clinical relationships "
    "between ICD-10-CM diagnosis concepts.\n"
    "Statistical indicators provided:\n"
    "- events_ab (co-occurrences): {co_occurrence}\n"
    "- events_ab_ae (actual-to-expected ratio): {ratio:.2f} ({band} evidence)\n\n"
    "Interpretation guidelines:\n"
    "- ≥ 2.0: Strong statistical evidence; carefully consider relationships.\n"
    "- 1.5–1.99: Moderate evidence; cautious evaluation.\n"
    "- 1.0–1.49: Weak evidence; rely primarily on clinical knowledge.\n"
    "- < 1.0: Minimal evidence; avoid indirect/speculative claims.\n\n"
    "Explicit guidelines to avoid speculation:\n"
    "- Direct causation: Only if explicit and clinically accepted.\n"
    "  Example: Pneumonia causes cough.\n\n"
    "- Indirect causation: Only with explicit and named intermediate diagnosis.\n"
    "  Example: Pneumonia → sepsis → acute kidney injury.\n\n"
    "- Common cause: Only with clearly documented third diagnosis.\n"
    "  Example: Obesity clearly causing both diabetes type 2 and osteoarthritis.\n\n"
    "- Treatment-caused: Only if explicitly well-documented.\n"
    "  Example: Chemotherapy for cancer causing nausea.\n\n"
    "- Similar presentations: Only if clinically documented similarity exists.\n\n"
    "- Subset relationship: Explicitly broader or unspecified form.\n\n"
    "If evidence or explicit documentation is lacking, choose category 11 (No clear relationship).\n\n"
    "Classify explicitly the relationship between:\n"
    "- Concept A: {concept_a}\n"
    "- Concept B: {concept_b}\n\n"
    "Categories:\n"
    "1: A causes B\n"
    "2: B causes A\n"
    "3: A indirectly causes B (explicit intermediate required)\n"
    "4: B indirectly causes A (explicit intermediate required)\n"
    "5: A and B share common cause (explicit third condition required)\n"
    "6: Treatment of A causes B (explicit treatment documentation required)\n"
    "7: Treatment of B causes A (explicit treatment documentation required)\n"
    "8: A and B have similar initial presentations\n"
    "9: A is subset of B\n"
    "10: B is subset of A\n"
    "11: No clear relationship (default)\n\n"
    'Answer exactly as "<number>: <short description>: <concise rationale>".'
)


def strength_band(ratio: float) -> str:
    """Name the evidence band for an actual/expected ratio."""
    if ratio >= 2.0:
        return "strong"
    if ratio >= 1.5:
        return "moderate"
    if ratio >= 1.0:
        return "weak"
    return "minimal"


def build_relationship_prompt(
    concept_a_text: str,
    concept_b_text: str,
    co_occurrence: int,
    actual_to_expected: float,
) -> str:
    """Render the classification prompt. Deterministic for equal inputs."""
    return PROMPT_TEMPLATE.format(
        co_occurrence=co_occurrence,
        ratio=actual_to_expected,
        band=strength_band(actual_to_expected),
        concept_a=concept_a_text,
        concept_b=concept_b_text,
    )


@dataclass
class ClassificationResult:
    """Outcome of one classification, successful or defaulted."""

    code: int
    label: str
    rationale: str
    model: str
    usage: Dict[str, int] = field(default_factory=dict)
    succeeded: bool = True

    def to_payload(self) -> Dict[str, object]:
        return {
            "code": self.code,
            "label": self.label,
            "rationale": self.rationale,
            "model": self.model,
            "usage": dict(self.usage),
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, object]) -> "ClassificationResult":
        code = payload.get("code")
        return cls(
            code=code if isinstance(code, int) else DEFAULT_RELATIONSHIP_CODE,
            label=str(payload.get("label") or RELATIONSHIP_TYPES[DEFAULT_RELATIONSHIP_CODE]),
            rationale=str(payload.get("rationale") or ""),
            model=str(payload.get("model") or ""),
            usage={k: int(v) for k, v in dict(payload.get("usage") or {}).items()},
            succeeded=True,
        )


def parse_classification_reply(reply: str) -> tuple[int, str, str]:
    """Split a ``"<code>: <label>: <rationale>"`` reply.

    An unparseable or out-of-range code defaults to 11. A missing label falls back to the
    taxonomy name for the code, a missing rationale to a dash.
    """
    parts = (reply or "").strip().split(": ")

    match = _LEADING_INT_RE.match(parts[0]) if parts else None
    code = int(match.group(1)) if match else DEFAULT_RELATIONSHIP_CODE
    if code not in RELATIONSHIP_TYPES:
        code = DEFAULT_RELATIONSHIP_CODE

    label = parts[1].strip() if len(parts) > 1 else ""
    if not label:
        label = RELATIONSHIP_TYPES.get(code, RELATIONSHIP_TYPES[DEFAULT_RELATIONSHIP_CODE])

    rationale = ": ".join(parts[2:]).strip() or "—"
    return code, label, rationale


class RelationshipClassifier:
    """Classifies concept pairs through a prioritized list of models."""

    def __init__(self, client: ChatCompletionClient, models: List[str]):
        if not models:
            raise ValueError("At least one model is required")
        self.client = client
        self.models = list(models)

    @property
    def primary_model(self) -> str:
        return self.models[0]

    async def classify(
        self,
        concept_a_text: str,
        concept_b_text: str,
        co_occurrence: int,
        actual_to_expected: float,
    ) -> ClassificationResult:
        """Classify one pair. Never raises.

        A model-unavailable reply moves on to the next model; any other
        failure stops the walk and yields the default category.
        """
        prompt = build_relationship_prompt(
            concept_a_text, concept_b_text, co_occurrence, actual_to_expected
        )
        messages = [{"role": "user", "content": prompt}]
        last_error: Optional[str] = None

        for model in self.models:
            try:
                reply, usage = await self.client.complete(model=model, messages=messages, temperature=0.0)
            except ModelUnavailableError as e:
                LOGGER.warning(f"Model {model} unavailable, trying next", extra={"error": str(e)})
                last_error = str(e)
                continue
            except APIClientError as e:
                LOGGER.error(f"Classification failed on model {model}", extra={"error": str(e)})
                last_error = str(e)
                break

            code, label, rationale = parse_classification_reply(reply)
            return ClassificationResult(
                code=code, label=label, rationale=rationale, model=model, usage=usage
            )

        return ClassificationResult(
            code=DEFAULT_RELATIONSHIP_CODE,
            label=RELATIONSHIP_TYPES[DEFAULT_RELATIONSHIP_CODE],
            rationale=f"LLM error: {last_error[:200]}" if last_error else "LLM unavailable",
            model=self.primary_model,
            usage={},
            succeeded=False,
        )
