import logging
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
)
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from flagpub.config import settings
from flagpub.errors import StorageConfigurationError, StorageError
from flagpub.metrics import STORAGE_RETRIES
from flagpub.models import App

logger = logging.getLogger(__name__)

ARTIFACT_NAME = "config.jws"
CONTENT_TYPE = "application/jose"

_TRANSIENT_CODES = {
    "InternalError",
    "ServiceUnavailable",
    "SlowDown",
    "RequestTimeout",
    "RequestTimeoutException",
    "Throttling",
    "ThrottlingException",
}
_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}


def artifact_key(app_identifier: str) -> str:
    return f"{app_identifier}/{ARTIFACT_NAME}"


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _status(exc: ClientError) -> int:
    return int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0)


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (BotoConnectionError, HTTPClientError)):
        return True
    if isinstance(exc, ClientError):
        return _error_code(exc) in _TRANSIENT_CODES or _status(exc) >= 500
    return False


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ClientError) and (_error_code(exc) in _NOT_FOUND_CODES or _status(exc) == 404)


class S3ArtifactStore:
    """Reads and writes signed artifacts, retrying transient failures only."""

    def __init__(self, client: Any, bucket: str, *,
                 attempts: Optional[int] = None, max_wait: Optional[float] = None):
        self.client = client
        self.bucket = bucket
        self.attempts = attempts or settings.STORAGE_RETRY_ATTEMPTS
        self.max_wait = settings.STORAGE_RETRY_MAX_WAIT if max_wait is None else max_wait

    def _retrying(self, operation: str) -> Retrying:
        def before_sleep(state):
            STORAGE_RETRIES.labels(operation).inc()
            logger.warning(
                "transient storage failure on %s (attempt %d): %s",
                operation, state.attempt_number, state.outcome.exception(),
            )

        return Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=0.5, max=self.max_wait),
            retry=retry_if_exception(is_transient),
            before_sleep=before_sleep,
            reraise=True,
        )

    def put(self, key: str, body: bytes) -> None:
        def _put() -> None:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=CONTENT_TYPE,
                CacheControl=settings.S3_CACHE_CONTROL,
            )

        try:
            self._retrying("put")(_put)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Upload of s3://{self.bucket}/{key} failed: {exc}") from exc

    def get(self, key: str) -> Optional[str]:
        """Return the stored object as text, or None if it does not exist."""
        def _get() -> bytes:
            resp = self.client.get_object(Bucket=self.bucket, Key=key)
            body = resp.get("Body")
            return body.read() if body is not None else b""

        try:
            data = self._retrying("get")(_get)
        except ClientError as exc:
            if is_not_found(exc):
                return None
            raise StorageError(f"Read of s3://{self.bucket}/{key} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Read of s3://{self.bucket}/{key} failed: {exc}") from exc
        return data.decode("utf-8") if data else None


def store_for_app(app: App) -> S3ArtifactStore:
    cfg = app.storage_config or {}
    bucket = cfg.get("bucket") or settings.S3_BUCKET
    if not bucket:
        raise StorageConfigurationError(f"No storage bucket configured for app {app.identifier}")
    client = boto3.client(
        "s3",
        endpoint_url=cfg.get("endpoint") or settings.S3_ENDPOINT,
        region_name=cfg.get("region") or settings.S3_REGION,
        aws_access_key_id=cfg.get("access_key_id") or settings.S3_ACCESS_KEY_ID,
        aws_secret_access_key=cfg.get("secret_access_key") or settings.S3_SECRET_ACCESS_KEY,
        # path-style for MinIO; retries are handled above
        config=Config(s3={"addressing_style": "path"}, retries={"total_max_attempts": 1, "mode": "standard"}),
    )
    return S3ArtifactStore(client, bucket)
