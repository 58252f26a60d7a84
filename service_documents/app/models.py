"""
Request models for the non-generic Document Gateway endpoints.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SearchRequest(BaseModel):
    """Body of ``POST /api/{database}/{collection}/search``."""
    pipeline: Optional[List[Dict[str, Any]]] = Field(None, description="Aggregation pipeline stages")


class CacheClearRequest(BaseModel):
    """Body of ``POST /api/cache/clear``."""
    pattern: Optional[str] = Field(None, description="Key prefix to invalidate; omit to clear everything")
