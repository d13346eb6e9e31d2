"""
Proxy pool API routes.

Credentials are never returned: every URL is masked.
"""

from fastapi import APIRouter

from caption.models.schemas import ProxyStatus
from caption.services.retrieval import get_retriever

router = APIRouter(prefix="/api/proxies", tags=["proxies"])


@router.get("", response_model=list[ProxyStatus])
async def get_proxies() -> list[ProxyStatus]:
    """Health snapshot of every proxy endpoint."""
    return get_retriever().pool.snapshot()
