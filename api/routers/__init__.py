"""
Router package for the genealogy access API.

- health: liveness and readiness probes
- tools: gated AI analysis endpoints (/api/tools/*)
- usage: usage summary for the calling identity
- identity: anonymous identity merge and cleanup
"""

from api.routers.health import router as health_router
from api.routers.identity import router as identity_router
from api.routers.tools import router as tools_router
from api.routers.usage import router as usage_router

__all__ = [
    "health_router",
    "identity_router",
    "tools_router",
    "usage_router",
]
