"""Request bodies for the analysis tool endpoints."""

from typing import Any, Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field


class DocumentAnalyzeRequest(BaseModel):
    """Transcribed or OCR'd document text."""
    text: str = Field(..., min_length=1, max_length=50_000)


class DNAAnalyzeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    dna_data: Dict[str, Any] = Field(..., alias="dnaData")


class TreeExpandRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tree_data: Dict[str, Any] = Field(..., alias="treeData")


class PhotoAnalyzeRequest(BaseModel):
    """Text description of the photo (image upload is handled elsewhere)."""
    description: str = Field(..., min_length=1, max_length=10_000)


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(..., min_length=1)


class ResearchChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(..., min_length=1, max_length=50)
