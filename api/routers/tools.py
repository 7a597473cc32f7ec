"""Gated AI analysis tools.

POST /api/tools/document/analyze - extract names, dates, places, relationships
POST /api/tools/dna/analyze      - interpret DNA results
POST /api/tools/tree/expand      - suggest family tree connections
POST /api/tools/photo/analyze    - date and describe a family photo
POST /api/tools/research/chat    - research assistant conversation

Every handler passes the access gate before doing any work. The use case
is a dependency, so a missing AI configuration fails before quota is
reserved.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from api.access import AccessGuard, get_access_guard, success_response
from api.deps import get_analysis_use_case
from api.schemas import (
    DNAAnalyzeRequest,
    DocumentAnalyzeRequest,
    PhotoAnalyzeRequest,
    ResearchChatRequest,
    TreeExpandRequest,
)
from application.models import AnalysisType
from application.use_cases.run_analysis import RunAnalysisUseCase

router = APIRouter(prefix="/api/tools", tags=["Tools"])


async def _analyze(
    use_case: RunAnalysisUseCase,
    guard: AccessGuard,
    analysis_type: AnalysisType,
    payload: Any,
) -> JSONResponse:
    decision = await guard.require(analysis_type)
    outcome = await use_case.execute(analysis_type, payload, decision)
    body: Dict[str, Any] = {
        "analysis": outcome.payload,
        "parseStatus": outcome.parse_status,
        "warnings": outcome.warnings,
    }
    return success_response(decision, body)


@router.post("/document/analyze")
async def analyze_document(
    body: DocumentAnalyzeRequest,
    use_case: RunAnalysisUseCase = Depends(get_analysis_use_case),
    guard: AccessGuard = Depends(get_access_guard),
):
    return await _analyze(use_case, guard, AnalysisType.DOCUMENT, body.text)


@router.post("/dna/analyze")
async def analyze_dna(
    body: DNAAnalyzeRequest,
    use_case: RunAnalysisUseCase = Depends(get_analysis_use_case),
    guard: AccessGuard = Depends(get_access_guard),
):
    return await _analyze(use_case, guard, AnalysisType.DNA, body.dna_data)


@router.post("/tree/expand")
async def expand_tree(
    body: TreeExpandRequest,
    use_case: RunAnalysisUseCase = Depends(get_analysis_use_case),
    guard: AccessGuard = Depends(get_access_guard),
):
    return await _analyze(use_case, guard, AnalysisType.FAMILY_TREE, body.tree_data)


@router.post("/photo/analyze")
async def analyze_photo(
    body: PhotoAnalyzeRequest,
    use_case: RunAnalysisUseCase = Depends(get_analysis_use_case),
    guard: AccessGuard = Depends(get_access_guard),
):
    return await _analyze(use_case, guard, AnalysisType.PHOTO, body.description)


@router.post("/research/chat")
async def research_chat(
    body: ResearchChatRequest,
    use_case: RunAnalysisUseCase = Depends(get_analysis_use_case),
    guard: AccessGuard = Depends(get_access_guard),
):
    """Research assistant reply. Each request counts as one RESEARCH use."""
    decision = await guard.require(AnalysisType.RESEARCH)
    messages = [m.model_dump() for m in body.messages]
    outcome = await use_case.execute(AnalysisType.RESEARCH, messages, decision)
    return success_response(decision, {**outcome.payload, "parseStatus": outcome.parse_status})
