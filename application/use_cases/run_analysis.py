"""Use case: run a gated AI analysis once access has been granted.

The access decision must already be allowed; this builds the prompt, calls
the model, normalizes the output and commits the usage reservation. A
failed model call leaves the reservation in place (quota is not refunded).
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol

from application.models import AccessDecision, AnalysisType
from backend.observability import traced
from backend.services.ai_response_normalizer import ParseFallback, normalize
from backend.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


class CompletionClient(Protocol):
    async def complete(
        self,
        messages: List[Dict[str, Any]],
        system: str,
        max_tokens: int = 2000,
        temperature: float = 0.3,
    ) -> str:
        ...


@dataclass(frozen=True)
class PromptSpec:
    system: str
    max_tokens: int
    temperature: float


PROMPTS: Dict[AnalysisType, PromptSpec] = {
    AnalysisType.DOCUMENT: PromptSpec(
        system=(
            "You are an expert genealogical document analyzer. Extract names, dates, places "
            "and relationships from historical documents with a confidence score (0-1) for each. "
            'Return strict JSON: {"names": [{"text", "type": "person"|"place", "confidence"}], '
            '"dates": [{"text", "type": "birth"|"death"|"marriage"|"other", "confidence"}], '
            '"places": [{"text", "confidence"}], '
            '"relationships": [{"person1", "person2", "type", "confidence"}], "suggestions": [string]}'
        ),
        max_tokens=2000,
        temperature=0.3,
    ),
    AnalysisType.DNA: PromptSpec(
        system=(
            "You are a genetic genealogy expert. Interpret DNA data into an ethnicity breakdown, "
            "regions and likely relative matches with confidence scores. Return JSON: "
            '{"ethnicity": {region: percent}, "regions": [string], '
            '"matches": [{"name", "relationship", "confidence", "sharedDNA"}], '
            '"haplogroups": {"paternal", "maternal"}, "suggestions": [string]}'
        ),
        max_tokens=2500,
        temperature=0.4,
    ),
    AnalysisType.FAMILY_TREE: PromptSpec(
        system=(
            "You are a family tree construction expert. Suggest probable family connections "
            "with confidence scores, considering naming patterns and geography. Return JSON: "
            '{"individuals": [{"id", "name", "birthDate", "deathDate", "birthPlace", '
            '"relationships": [{"type": "parent"|"child"|"spouse", "relatedTo", "confidence"}]}], '
            '"suggestions": [string]}'
        ),
        max_tokens=3000,
        temperature=0.5,
    ),
    AnalysisType.PHOTO: PromptSpec(
        system=(
            "You are a historical photo analyst. Estimate the era, place and occasion of a "
            "family photo and describe each person. Return JSON: "
            '{"individuals": [{"description", "estimatedAge", "gender", "confidence", '
            '"relationships": [string]}], "timeEra", "location", "occasion", "suggestions": [string]}'
        ),
        max_tokens=2000,
        temperature=0.7,
    ),
    AnalysisType.RESEARCH: PromptSpec(
        system=(
            "You are a genealogy research assistant. Help with research strategies, interpret "
            "records, explain historical context and always suggest concrete next steps."
        ),
        max_tokens=1500,
        temperature=0.6,
    ),
}

_USER_PREFIX = {
    AnalysisType.DOCUMENT: "Analyze this historical document text for genealogical information:",
    AnalysisType.DNA: "Analyze this DNA data for genealogical insights:",
    AnalysisType.FAMILY_TREE: "Based on this family information, suggest probable family connections:",
    AnalysisType.PHOTO: "Analyze this historical family photo and provide genealogical insights:",
}


@dataclass
class AnalysisOutcome:
    """Result of one analysis, ready to be serialized."""

    analysis_type: AnalysisType
    payload: Dict[str, Any]
    parse_status: str
    warnings: List[str] = field(default_factory=list)


def build_messages(analysis_type: AnalysisType, payload: Any) -> List[Dict[str, Any]]:
    """Anthropic-format messages for an analysis request."""
    if analysis_type == AnalysisType.RESEARCH:
        return [{"role": m["role"], "content": m["content"]} for m in payload]
    body = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return [{"role": "user", "content": f"{_USER_PREFIX[analysis_type]}\n\n{body}"}]


class RunAnalysisUseCase:
    """Prompt -> model -> normalizer -> usage commit."""

    def __init__(self, ai_client: CompletionClient, usage_ledger: UsageLedger) -> None:
        self._client = ai_client
        self._ledger = usage_ledger

    @traced(name="analysis.execute")
    async def execute(
        self,
        analysis_type: AnalysisType,
        payload: Any,
        decision: AccessDecision,
    ) -> AnalysisOutcome:
        """Run the analysis for an allowed decision.

        Raises:
            ValueError: The decision did not allow the request.
            AIServiceError: The model call failed.
        """
        if not decision.allowed or decision.usage is None:
            raise ValueError("RunAnalysisUseCase requires an allowed access decision")

        prompt = PROMPTS[analysis_type]
        raw = await self._client.complete(
            messages=build_messages(analysis_type, payload),
            system=prompt.system,
            max_tokens=prompt.max_tokens,
            temperature=prompt.temperature,
        )

        result = normalize(raw, analysis_type)
        self._ledger.commit(decision.usage)

        if isinstance(result, ParseFallback):
            logger.info(
                "%s analysis for %s returned fallback", analysis_type.value, decision.identity.identity_id
            )

        return AnalysisOutcome(
            analysis_type=analysis_type,
            payload=result.data,
            parse_status=result.status,
            warnings=result.warnings,
        )
