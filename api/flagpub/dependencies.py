from fastapi import Depends, Request
from sqlalchemy.orm import Session

from flagpub.database import get_db
from flagpub.services.publish import PublishPipeline
from flagpub.services.signing import SigningKeyManager


def get_pipeline(db: Session = Depends(get_db)) -> PublishPipeline:
    return PublishPipeline(db)


def get_key_manager(db: Session = Depends(get_db)) -> SigningKeyManager:
    return SigningKeyManager(db)


def get_actor(request: Request) -> str:
    return request.headers.get("X-Actor", "anonymous")
