from typing import Optional
from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session
from flagpub.database import get_db
from flagpub.dependencies import get_key_manager, get_pipeline
from flagpub.repositories import AppRepository
from flagpub.routers.keys import resolve_app_id
from flagpub.schemas import AppCreate, AppOut
from flagpub.services.bootstrap import render_plist
from flagpub.services.publish import PublishPipeline
from flagpub.services.signing import SigningKeyManager

router = APIRouter(tags=["apps"])

@router.post("/apps", response_model=AppOut, status_code=201)
def create_app(payload: AppCreate, pipeline: PublishPipeline = Depends(get_pipeline)):
    app = pipeline.create_app(
        name=payload.name,
        identifier=payload.identifier,
        artifact_url=payload.artifact_url,
        storage_config=payload.storage_config,
        fetch_policy=payload.fetch_policy,
    )
    return vars(app)

@router.get("/bootstrap/plist")
def bootstrap_plist(app_id: Optional[str] = None, app_identifier: Optional[str] = None,
                    db: Session = Depends(get_db), keys: SigningKeyManager = Depends(get_key_manager)):
    app = AppRepository(db).get(resolve_app_id(db, app_id, app_identifier))
    body = render_plist(app, keys.list_keys(app.id))
    return Response(
        content=body,
        media_type="application/x-plist",
        headers={"Content-Disposition": f'attachment; filename="{app.identifier}.plist"'},
    )
