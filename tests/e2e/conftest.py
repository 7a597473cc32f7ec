"""
E2E test fixtures for the access API.

These tests exercise the full HTTP contract: routing, dependencies, the
access gate, exception handlers and cookie handling all run for real.
Persistence and the AI provider are the in-memory fakes from tests/fakes,
wired through the root conftest's ``container`` fixture.

Architecture:
    TestClient --> FastAPI app --> routers --> ServiceContainer (fakes)
"""

from typing import Any, Dict

import pytest

from backend.container import build_container, build_rate_limiter
from backend.main import create_app
from fastapi.testclient import TestClient

DOCUMENT_URL = "/api/tools/document/analyze"
PHOTO_URL = "/api/tools/photo/analyze"
DNA_URL = "/api/tools/dna/analyze"
TREE_URL = "/api/tools/tree/expand"
RESEARCH_URL = "/api/tools/research/chat"

DOCUMENT_BODY: Dict[str, Any] = {"text": "John Smith, born 1850 in Boston, son of William Smith."}
PHOTO_BODY: Dict[str, Any] = {"description": "Studio portrait of a family of four, painted backdrop."}


@pytest.fixture
def no_ai_client(settings, clock, usage_repo, identity_repo, subscription_repo, data_access) -> TestClient:
    """Client for an app started without an Anthropic key."""
    container = build_container(
        settings,
        usage_repository=usage_repo,
        identity_repository=identity_repo,
        subscription_repository=subscription_repo,
        ai_client=None,
        rate_limiter=build_rate_limiter(settings, clock=clock),
        data_access=data_access,
    )
    return TestClient(create_app(settings=settings, container=container))


@pytest.fixture
def uninitialized_client(settings) -> TestClient:
    """App whose container was never built. Startup hooks are not run."""
    return TestClient(create_app(settings=settings, container=None))
