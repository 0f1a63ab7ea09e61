import json
import logging
import uuid
from typing import Optional

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from flagpub.config import settings
from flagpub.models import PublishRecord

logger = logging.getLogger(__name__)


def new_record_id() -> str:
    return str(uuid.uuid4())


def record_publish(db: Session, record: PublishRecord):
    """Append a PublishRecord. Raises IntegrityError if the version is already taken."""
    try:
        db.execute(
            text(
                """INSERT INTO publish_records
                       (id, app_id, version, published_at, published_by, changelog, diff_summary, artifact_size)
                   VALUES (:id, :app_id, :version, :published_at, :published_by, :changelog,
                           :diff_summary, :artifact_size)"""
            ).bindparams(bindparam("published_at", type_=DateTime)),
            {
                "id": record.id,
                "app_id": record.app_id,
                "version": record.version,
                "published_at": record.published_at,
                "published_by": record.published_by,
                "changelog": record.changelog,
                "diff_summary": json.dumps(record.diff_summary),
                "artifact_size": record.artifact_size,
            },
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise


def _retryable(exc: BaseException) -> bool:
    return isinstance(exc, SQLAlchemyError) and not isinstance(exc, IntegrityError)


def record_publish_with_retry(db: Session, record: PublishRecord,
                              attempts: Optional[int] = None, max_wait: Optional[float] = None):
    retrying = Retrying(
        stop=stop_after_attempt(attempts or settings.AUDIT_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=0.2, max=settings.AUDIT_RETRY_MAX_WAIT if max_wait is None else max_wait),
        retry=retry_if_exception(_retryable),
        before_sleep=lambda state: logger.warning(
            "retrying publish record %s for app %s: %s",
            record.version, record.app_id, state.outcome.exception(),
        ),
        reraise=True,
    )
    retrying(record_publish, db, record)
