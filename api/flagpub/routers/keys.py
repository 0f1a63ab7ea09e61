from typing import List, Optional
from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session
from flagpub.database import get_db
from flagpub.dependencies import get_key_manager
from flagpub.errors import ValidationError
from flagpub.repositories import AppRepository
from flagpub.schemas import KeyCreate, KeyOut
from flagpub.services.signing import SigningKeyManager

router = APIRouter(prefix="/keys", tags=["keys"])

def resolve_app_id(db: Session, app_id: Optional[str], app_identifier: Optional[str]) -> str:
    if app_id:
        return AppRepository(db).get(app_id).id
    if app_identifier:
        return AppRepository(db).get_by_identifier(app_identifier).id
    raise ValidationError("Either app_id or app_identifier is required")

@router.get("", response_model=List[KeyOut])
def list_keys(app_id: str = Query(...), keys: SigningKeyManager = Depends(get_key_manager)):
    return keys.list_public(app_id)

@router.post("", response_model=KeyOut, status_code=201)
def create_key(payload: KeyCreate, keys: SigningKeyManager = Depends(get_key_manager)):
    key = keys.generate(payload.app_id, payload.algorithm)
    if payload.activate:
        key = keys.activate(payload.app_id, key.kid)
    return key.public_info()

@router.get("/public", response_model=List[KeyOut])
def public_keys(app_id: Optional[str] = None, app_identifier: Optional[str] = None,
                db: Session = Depends(get_db), keys: SigningKeyManager = Depends(get_key_manager)):
    resolved = resolve_app_id(db, app_id, app_identifier)
    return keys.list_public(resolved)

@router.put("/{kid}/activate", response_model=KeyOut)
def activate_key(kid: str, app_id: str = Query(...), keys: SigningKeyManager = Depends(get_key_manager)):
    return keys.activate(app_id, kid).public_info()

@router.delete("/{kid}", status_code=204)
def delete_key(kid: str, app_id: str = Query(...), keys: SigningKeyManager = Depends(get_key_manager)):
    keys.delete(app_id, kid)
    return Response(status_code=204)
