"""Publish pipeline: compile, diff, allocate a version, sign, upload, record.

Stages run strictly in order and a failure in any stage aborts the rest. Up to
and including signing nothing is externally visible. Once the upload succeeds
the artifact is live; if the PublishRecord then cannot be written the caller
gets ``AuditIncomplete`` rather than a success, and the next publish
allocates a fresh version instead of patching this one: versions are
reserved in the database before signing.
"""
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from flagpub.cache import default_app_lock, publish_update
from flagpub.config import settings
from flagpub.errors import (
    AuditIncomplete,
    FlagPublishError,
    NotFound,
    SignatureError,
    StorageConfigurationError,
    ValidationError,
)
from flagpub.logging_config import app_id_ctx
from flagpub.metrics import ARTIFACT_BYTES, PUBLISHES, PUBLISH_LATENCY
from flagpub.models import App, ConfigArtifact, PublishRecord
from flagpub.repositories import AppRepository, PublishRecordRepository
from flagpub.services import signing
from flagpub.services.audit import new_record_id, record_publish_with_retry
from flagpub.services.compiler import ConfigCompiler
from flagpub.services.diff import ChangeSet, diff
from flagpub.services.storage import S3ArtifactStore, artifact_key, store_for_app
from flagpub.services.validation import app_identifier_error
from flagpub.services.versioning import VersionAllocator

logger = logging.getLogger(__name__)

INITIAL_CHANGELOG = "Initial application configuration"
SYSTEM_AUTHOR = "system"
DEFAULT_FETCH_POLICY = {"min_interval_seconds": 21600, "hard_ttl_days": 7}


class PublishStage(str, Enum):
    COMPILING = "compiling"
    DIFFING = "diffing"
    VERSION_ALLOCATED = "version_allocated"
    SIGNING = "signing"
    UPLOADING = "uploading"
    RECORDING_AUDIT = "recording_audit"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PublishResult:
    version: str
    published_at: str
    changes: ChangeSet
    artifact_size: int
    kid: str


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_utc(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


class PublishPipeline:
    def __init__(
        self,
        db: Session,
        store_factory: Callable[[App], S3ArtifactStore] = store_for_app,
        lock=None,
        notifier: Callable[[str, str], None] = publish_update,
        clock: Callable[[], datetime] = utc_now,
        audit_attempts: Optional[int] = None,
        audit_max_wait: Optional[float] = None,
    ):
        self.db = db
        self.apps = AppRepository(db)
        self.records = PublishRecordRepository(db)
        self.compiler = ConfigCompiler.for_session(db)
        self.allocator = VersionAllocator(self.records)
        self.keys = signing.SigningKeyManager(db)
        self.store_factory = store_factory
        self.lock = lock or default_app_lock()
        self.notifier = notifier
        self.clock = clock
        self.audit_attempts = audit_attempts
        self.audit_max_wait = audit_max_wait
        self.stage = PublishStage.COMPILING

    def _enter(self, stage: PublishStage) -> None:
        logger.debug("publish stage %s -> %s", self.stage.value, stage.value)
        self.stage = stage

    def publish(self, app_id: str, changelog: str, author: str) -> PublishResult:
        if not changelog or not changelog.strip():
            raise ValidationError("Changelog is required")
        app = self.apps.get(app_id)
        token = app_id_ctx.set(app_id)
        started = time.time()
        self.stage = PublishStage.COMPILING
        try:
            with self.lock.hold(app_id):
                result = self._run(app, changelog.strip(), author or SYSTEM_AUTHOR)
        except FlagPublishError as exc:
            failed_at = self.stage
            self._enter(PublishStage.FAILED)
            exc.stage = exc.stage or failed_at.value
            PUBLISHES.labels("failure", exc.stage).inc()
            level = logging.ERROR if exc.artifact_live else logging.WARNING
            logger.log(level, "publish of app %s failed at %s: %s", app.identifier, exc.stage, exc.message,
                       extra={"artifact_live": exc.artifact_live})
            raise
        finally:
            app_id_ctx.reset(token)

        PUBLISHES.labels("success", PublishStage.DONE.value).inc()
        PUBLISH_LATENCY.observe(time.time() - started)
        ARTIFACT_BYTES.observe(result.artifact_size)
        self.notifier(app.identifier, result.version)
        logger.info(
            "published app %s version %s (%d changes, %d bytes, key %s)",
            app.identifier, result.version, len(result.changes.changes), result.artifact_size, result.kid,
        )
        return result

    def _run(self, app: App, changelog: str, author: str) -> PublishResult:
        self._enter(PublishStage.COMPILING)
        artifact = self.compiler.compile(app.id)

        self._enter(PublishStage.DIFFING)
        store = self.store_factory(app)
        path = artifact_key(app.identifier)
        previous = self._previous_artifact(store, path)
        changes = diff(artifact, previous)

        self._enter(PublishStage.VERSION_ALLOCATED)
        now = self.clock()
        version = self.allocator.reserve(app.id, now)
        artifact.config_version = version
        artifact.published_at = iso_utc(now)
        artifact.metadata = {"changelog": changelog, "published_by": author}

        self._enter(PublishStage.SIGNING)
        key = self.keys.get_active(app.id)
        body = signing.sign(signing.serialize_payload(artifact.to_dict()), key).encode("ascii")
        if len(body) > settings.MAX_ARTIFACT_BYTES:
            raise ValidationError(
                f"Signed artifact is {len(body)} bytes, above the {settings.MAX_ARTIFACT_BYTES} byte limit"
            )

        self._enter(PublishStage.UPLOADING)
        store.put(path, body)

        self._enter(PublishStage.RECORDING_AUDIT)
        record = PublishRecord(
            id=new_record_id(),
            app_id=app.id,
            version=version,
            published_at=now,
            published_by=author,
            changelog=changelog,
            diff_summary=changes.to_dict(),
            artifact_size=len(body),
        )
        try:
            record_publish_with_retry(self.db, record, self.audit_attempts, self.audit_max_wait)
        except IntegrityError as exc:
            raise AuditIncomplete(
                f"Artifact {version} is live but version {version} was already recorded for app "
                f"{app.identifier}; publish again to record a fresh version",
                version=version,
            ) from exc
        except SQLAlchemyError as exc:
            raise AuditIncomplete(
                f"Artifact {version} is live but its publish record could not be written: {exc}",
                version=version,
            ) from exc

        self._enter(PublishStage.DONE)
        return PublishResult(
            version=version,
            published_at=artifact.published_at,
            changes=changes,
            artifact_size=len(body),
            kid=key.kid,
        )

    def _previous_artifact(self, store: S3ArtifactStore, path: str) -> Optional[ConfigArtifact]:
        envelope = store.get(path)
        if envelope is None:
            return None
        try:
            return ConfigArtifact.from_dict(signing.decode_unverified(envelope))
        except SignatureError as exc:
            logger.warning("previous artifact at %s is unreadable, diffing against nothing: %s", path, exc)
            return None

    def create_app(
        self,
        *,
        name: str,
        identifier: str,
        artifact_url: str,
        storage_config: dict,
        fetch_policy: Optional[dict] = None,
        public_keys: Optional[list] = None,
    ) -> App:
        """Create an App and prove its storage works with a first publish.

        The App gets a freshly activated signing key and a baseline artifact
        (``<today>.1``). If any of that fails the App is removed again and
        ``StorageConfigurationError`` is raised.
        """
        err = app_identifier_error(identifier)
        if err:
            raise ValidationError(err)
        app = App(
            id=str(uuid.uuid4()),
            name=name,
            identifier=identifier,
            artifact_url=artifact_url,
            fetch_policy={**DEFAULT_FETCH_POLICY, **(fetch_policy or {})},
            public_keys=list(public_keys or []),
            storage_config=storage_config or {},
            created_at=self.clock(),
        )
        try:
            self.apps.insert(app)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        try:
            key = self.keys.generate(app.id)
            self.keys.activate(app.id, key.kid)
            self.publish(app.id, INITIAL_CHANGELOG, SYSTEM_AUTHOR)
        except Exception as exc:
            self.db.rollback()
            self.apps.delete_cascade(app.id)
            self.db.commit()
            logger.error("initial publish for app %s failed, app removed: %s", identifier, exc)
            raise StorageConfigurationError(
                f"Failed to create initial configuration for app {identifier}; check the storage settings: {exc}"
            ) from exc
        return self.apps.get(app.id)

    def history(self, app_id: str, limit: int = 50) -> List[PublishRecord]:
        self.apps.get(app_id)
        return self.records.list_recent(app_id, limit)

    def fetch_published(self, app_id: str) -> dict:
        """Download the live artifact and verify it against the app's keys."""
        app = self.apps.get(app_id)
        envelope = self.store_factory(app).get(artifact_key(app.identifier))
        if envelope is None:
            raise NotFound(f"No published artifact for app {app.identifier}")
        return signing.verify(envelope, self.keys.list_keys(app_id))
