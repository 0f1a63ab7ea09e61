"""Signing keys and the compact JWS envelope around published artifacts.

An app has any number of keys but at most one active one. Only the active key
signs; every key that still exists verifies, so rotating does not break
clients holding artifacts signed by the previous key. Deleting a key is what
withdraws trust, and the active key cannot be deleted.
"""
import json
import logging
import secrets
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional

import jwt
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flagpub.config import settings
from flagpub.errors import Conflict, NotFound, SignatureError, SigningKeyMissing, ValidationError
from flagpub.metrics import KEY_ROTATIONS
from flagpub.models import SigningKey
from flagpub.repositories import AppRepository, SigningKeyRepository

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = ("RS256", "PS256", "ES256")


def generate_kid() -> str:
    return secrets.token_hex(16)


def new_private_key(algorithm: str):
    if algorithm == "ES256":
        return ec.generate_private_key(ec.SECP256R1())
    if algorithm in ("RS256", "PS256"):
        return rsa.generate_private_key(public_exponent=65537, key_size=settings.SIGNING_KEY_BITS)
    raise ValidationError(
        f"Unsupported signing algorithm '{algorithm}'; expected one of {', '.join(SUPPORTED_ALGORITHMS)}"
    )


def generate_key_pair(app_id: str, algorithm: Optional[str] = None) -> SigningKey:
    algorithm = algorithm or settings.SIGNING_ALGORITHM
    private_key = new_private_key(algorithm)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return SigningKey(
        id=str(uuid.uuid4()),
        app_id=app_id,
        kid=generate_kid(),
        public_key=public_pem,
        private_key=private_pem,
        algorithm=algorithm,
        is_active=False,
        created_at=datetime.now(timezone.utc),
    )


def serialize_payload(payload: dict) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sign(payload: bytes, key: SigningKey) -> str:
    """Compact JWS: base64url(header).base64url(payload).base64url(signature)."""
    try:
        private_key = serialization.load_pem_private_key(key.private_key.encode("ascii"), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise SignatureError(f"Signing key {key.kid} has malformed private key material") from exc
    try:
        return jwt.api_jws.encode(payload, private_key, algorithm=key.algorithm, headers={"kid": key.kid})
    except (jwt.exceptions.PyJWTError, NotImplementedError, TypeError, ValueError) as exc:
        raise SignatureError(f"Failed to sign with key {key.kid}: {exc}") from exc


def unverified_header(envelope: str) -> dict:
    try:
        return jwt.api_jws.get_unverified_header(envelope)
    except jwt.exceptions.PyJWTError as exc:
        raise SignatureError(f"Invalid JWS envelope: {exc}") from exc


def decode_unverified(envelope: str) -> dict:
    try:
        decoded = jwt.api_jws.decode_complete(envelope, options={"verify_signature": False})
        return json.loads(decoded["payload"])
    except (jwt.exceptions.PyJWTError, ValueError) as exc:
        raise SignatureError(f"Invalid JWS envelope: {exc}") from exc


def verify(envelope: str, keys: Iterable[SigningKey]) -> dict:
    """Verify ``envelope`` with the key its header names, active or retired."""
    kid = unverified_header(envelope).get("kid")
    key = next((k for k in keys if k.kid == kid), None)
    if key is None:
        raise SignatureError(f"Envelope signed with unknown key {kid}")
    try:
        payload = jwt.api_jws.decode(envelope, key.public_key, algorithms=[key.algorithm])
    except jwt.exceptions.PyJWTError as exc:
        raise SignatureError(f"Signature verification failed for key {kid}: {exc}") from exc
    return json.loads(payload)


class SigningKeyManager:
    def __init__(self, db: Session):
        self.db = db
        self.apps = AppRepository(db)
        self.keys = SigningKeyRepository(db)

    def generate(self, app_id: str, algorithm: Optional[str] = None) -> SigningKey:
        app = self.apps.get(app_id)
        key = generate_key_pair(app_id, algorithm)
        try:
            self.keys.insert(key)
            self.apps.set_public_keys(app_id, app.public_keys + [key.distribution_info()])
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info("generated signing key %s for app %s", key.kid, app.identifier)
        return key

    def activate(self, app_id: str, kid: str) -> SigningKey:
        """Make ``kid`` the app's only active key in a single transaction."""
        try:
            if self.keys.get(app_id, kid) is None:
                raise NotFound(f"Signing key {kid} not found for app {app_id}")
            self.keys.deactivate_others(app_id, kid)
            if self.keys.activate(app_id, kid) == 0:
                raise NotFound(f"Signing key {kid} not found for app {app_id}")
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise Conflict(f"Concurrent key rotation for app {app_id}; retry") from exc
        except Exception:
            self.db.rollback()
            raise
        KEY_ROTATIONS.inc()
        logger.info("activated signing key %s for app %s", kid, app_id)
        return self.keys.get(app_id, kid)

    def delete(self, app_id: str, kid: str) -> None:
        try:
            if self.keys.delete_inactive(app_id, kid) == 0:
                existing = self.keys.get(app_id, kid)
                if existing is None:
                    raise NotFound(f"Signing key {kid} not found for app {app_id}")
                raise Conflict(
                    f"Cannot delete active signing key {kid}; activate a replacement first"
                )
            app = self.apps.get(app_id)
            self.apps.set_public_keys(app_id, [k for k in app.public_keys if k.get("kid") != kid])
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info("deleted signing key %s for app %s", kid, app_id)

    def get_active(self, app_id: str) -> SigningKey:
        key = self.keys.get_active(app_id)
        if key is None:
            raise SigningKeyMissing(f"No active signing key found for app {app_id}")
        return key

    def list_keys(self, app_id: str) -> List[SigningKey]:
        self.apps.get(app_id)
        return self.keys.list_for_app(app_id)

    def list_public(self, app_id: str) -> List[dict]:
        return [k.public_info() for k in self.list_keys(app_id)]
