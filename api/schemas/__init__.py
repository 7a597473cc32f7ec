"""Request schemas for the HTTP API."""

from api.schemas.analysis import (
    ChatMessage,
    DNAAnalyzeRequest,
    DocumentAnalyzeRequest,
    PhotoAnalyzeRequest,
    ResearchChatRequest,
    TreeExpandRequest,
)

__all__ = [
    "ChatMessage",
    "DNAAnalyzeRequest",
    "DocumentAnalyzeRequest",
    "PhotoAnalyzeRequest",
    "ResearchChatRequest",
    "TreeExpandRequest",
]
