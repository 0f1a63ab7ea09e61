from typing import List
from fastapi import APIRouter, Body, Depends, Query
from flagpub.dependencies import get_actor, get_pipeline
from flagpub.schemas import PublishRequest, PublishOut, PublishRecordOut, ValidationReport
from flagpub.services.compiler import validate
from flagpub.services.publish import PublishPipeline

router = APIRouter(prefix="/config", tags=["config"])

@router.post("/generate")
def generate(app_id: str = Body(..., embed=True), pipeline: PublishPipeline = Depends(get_pipeline)):
    # preview only: unversioned and unsigned
    artifact, warnings = pipeline.compiler.compile_with_warnings(app_id)
    return {"artifact": artifact.to_dict(), "warnings": [w.to_dict() for w in warnings]}

@router.post("/validate", response_model=ValidationReport)
def validate_config(app_id: str = Body(..., embed=True), pipeline: PublishPipeline = Depends(get_pipeline)):
    return validate(pipeline.compiler, app_id)

@router.post("/publish", response_model=PublishOut, status_code=201)
def publish(payload: PublishRequest, actor: str = Depends(get_actor),
            pipeline: PublishPipeline = Depends(get_pipeline)):
    result = pipeline.publish(payload.app_id, payload.changelog, actor)
    return {
        "version": result.version,
        "published_at": result.published_at,
        "changes": result.changes.to_dict(),
        "artifact_size": result.artifact_size,
        "kid": result.kid,
    }

@router.get("/history", response_model=List[PublishRecordOut])
def history(app_id: str = Query(...), limit: int = Query(50, ge=1, le=500),
            pipeline: PublishPipeline = Depends(get_pipeline)):
    return [vars(r) for r in pipeline.history(app_id, limit)]

@router.get("/published")
def published(app_id: str = Query(...), pipeline: PublishPipeline = Depends(get_pipeline)):
    return pipeline.fetch_published(app_id)
