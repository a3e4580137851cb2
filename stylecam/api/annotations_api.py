"""
Read-only HTTP endpoints for pipeline status and the latest annotations.
"""

import logging
from typing import Dict

from fastapi import APIRouter, HTTPException, Request

from stylecam.schemas.annotations import AnnotationSnapshot, StatusResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["annotations"])


def _service(request: Request):
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Detection service not started")
    return service


@router.get("/status", response_model=StatusResponse)
async def get_status(request: Request):
    """Readiness states, scheduler counters and any fatal error."""
    return _service(request).status()


@router.get("/annotations", response_model=Dict[str, AnnotationSnapshot])
async def get_all_annotations(request: Request):
    return _service(request).store.get_all()


@router.get("/annotations/{key}", response_model=AnnotationSnapshot)
async def get_annotations(key: str, request: Request):
    store = _service(request).store
    try:
        return store.get_latest(key)
    except KeyError:
        logger.debug("[API] Unknown annotation key requested: %s", key)
        raise HTTPException(status_code=404, detail=f"Unknown annotation key '{key}'. Known keys: {store.keys}")
