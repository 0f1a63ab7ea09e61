"""Narrow per-entity queries over the relational store.

The compiler, key manager and pipeline only talk to these classes, so tests
can hand them fakes or run them against SQLite.
"""
import json
from typing import Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, bindparam, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flagpub.errors import Conflict, NotFound
from flagpub.models import (
    ENVIRONMENTS,
    App,
    Cohort,
    Experiment,
    ExperimentValue,
    Flag,
    PublishRecord,
    SigningKey,
    TestVariant,
    decode_experiment_value,
)

APP_COLUMNS = "id, name, identifier, artifact_url, fetch_policy, public_keys, storage_config, created_at"
KEY_COLUMNS = "id, app_id, kid, public_key, private_key, algorithm, is_active, created_at"


def row_to_app(row) -> App:
    return App(
        id=row.id,
        name=row.name,
        identifier=row.identifier,
        artifact_url=row.artifact_url,
        fetch_policy=row.fetch_policy or {},
        public_keys=row.public_keys or [],
        storage_config=row.storage_config or {},
        created_at=row.created_at,
    )


def row_to_key(row) -> SigningKey:
    return SigningKey(
        id=row.id,
        app_id=row.app_id,
        kid=row.kid,
        public_key=row.public_key,
        private_key=row.private_key,
        algorithm=row.algorithm,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _decode_env_values(raw: Optional[dict], flag_ids: List[str]) -> Dict[str, Optional[ExperimentValue]]:
    raw = raw or {}
    return {env: decode_experiment_value(raw.get(env), flag_ids) for env in ENVIRONMENTS}


def _percentage(value):
    # float columns hand back 50.0; whole numbers stay integers on the wire
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def row_to_experiment(row) -> Experiment:
    flag_ids = [str(f) for f in (row.flag_ids or [])]
    variants = [
        TestVariant(
            name=name,
            percentage=(entry or {}).get("percentage", 0),
            values=_decode_env_values((entry or {}).get("values"), flag_ids),
        )
        for name, entry in (row.variants or {}).items()
    ]
    return Experiment(
        id=row.id,
        app_id=row.app_id,
        key=row.key,
        name=row.name,
        description=row.description,
        kind=(row.kind or "").upper(),
        salt=row.salt,
        conditions=row.conditions or [],
        flag_ids=flag_ids,
        variants=variants,
        percentage=_percentage(row.percentage),
        values=_decode_env_values(row.rollout_values, flag_ids),
        archived=bool(row.archived),
    )


class AppRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, app_id: str) -> App:
        row = self.db.execute(
            text(f"SELECT {APP_COLUMNS} FROM apps WHERE id=:id").columns(
                fetch_policy=JSON, public_keys=JSON, storage_config=JSON, created_at=DateTime
            ),
            {"id": app_id},
        ).fetchone()
        if not row:
            raise NotFound(f"App {app_id} not found")
        return row_to_app(row)

    def get_by_identifier(self, identifier: str) -> App:
        row = self.db.execute(
            text(f"SELECT {APP_COLUMNS} FROM apps WHERE identifier=:identifier").columns(
                fetch_policy=JSON, public_keys=JSON, storage_config=JSON, created_at=DateTime
            ),
            {"identifier": identifier},
        ).fetchone()
        if not row:
            raise NotFound(f"App {identifier} not found")
        return row_to_app(row)

    def insert(self, app: App) -> None:
        existing = self.db.execute(
            text("SELECT 1 FROM apps WHERE identifier=:identifier"), {"identifier": app.identifier}
        ).fetchone()
        if existing:
            raise Conflict(f"An app with identifier '{app.identifier}' already exists")
        try:
            self.db.execute(
                text(
                    f"""INSERT INTO apps ({APP_COLUMNS})
                        VALUES (:id, :name, :identifier, :artifact_url, :fetch_policy,
                                :public_keys, :storage_config, :created_at)"""
                ).bindparams(bindparam("created_at", type_=DateTime)),
                {
                    "id": app.id,
                    "name": app.name,
                    "identifier": app.identifier,
                    "artifact_url": app.artifact_url,
                    "fetch_policy": json.dumps(app.fetch_policy),
                    "public_keys": json.dumps(app.public_keys),
                    "storage_config": json.dumps(app.storage_config),
                    "created_at": app.created_at,
                },
            )
        except IntegrityError as exc:
            raise Conflict(f"An app with identifier '{app.identifier}' already exists") from exc

    def set_public_keys(self, app_id: str, public_keys: list) -> None:
        self.db.execute(
            text("UPDATE apps SET public_keys=:pk WHERE id=:id"),
            {"pk": json.dumps(public_keys), "id": app_id},
        )

    def delete_cascade(self, app_id: str) -> None:
        for table in ("publish_records", "version_reservations", "signing_keys", "experiments", "cohorts", "flags"):
            self.db.execute(text(f"DELETE FROM {table} WHERE app_id=:a"), {"a": app_id})
        self.db.execute(text("DELETE FROM apps WHERE id=:a"), {"a": app_id})


class FlagRepository:
    def __init__(self, db: Session):
        self.db = db

    def list_active(self, app_id: str) -> List[Flag]:
        rs = self.db.execute(
            text(
                """SELECT id, app_id, key, type, description, default_values, variants, archived
                   FROM flags WHERE app_id=:a AND archived=:archived ORDER BY key"""
            ).columns(default_values=JSON, variants=JSON, archived=Boolean),
            {"a": app_id, "archived": False},
        )
        return [
            Flag(
                id=r.id,
                app_id=r.app_id,
                key=r.key,
                type=r.type,
                description=r.description,
                default_values=r.default_values,
                variants=r.variants or {},
                archived=bool(r.archived),
            )
            for r in rs.fetchall()
        ]


class CohortRepository:
    def __init__(self, db: Session):
        self.db = db

    def list_for_app(self, app_id: str) -> List[Cohort]:
        rs = self.db.execute(
            text(
                "SELECT id, app_id, key, name, description, conditions FROM cohorts WHERE app_id=:a ORDER BY key"
            ).columns(conditions=JSON),
            {"a": app_id},
        )
        return [
            Cohort(
                id=r.id,
                app_id=r.app_id,
                key=r.key,
                name=r.name,
                description=r.description,
                conditions=r.conditions or [],
            )
            for r in rs.fetchall()
        ]


class ExperimentRepository:
    def __init__(self, db: Session):
        self.db = db

    def list_active(self, app_id: str) -> List[Experiment]:
        rs = self.db.execute(
            text(
                """SELECT id, app_id, key, name, description, kind, salt, conditions, flag_ids,
                          variants, percentage, rollout_values, archived
                   FROM experiments WHERE app_id=:a AND archived=:archived ORDER BY key"""
            ).columns(
                conditions=JSON, flag_ids=JSON, variants=JSON, rollout_values=JSON, archived=Boolean
            ),
            {"a": app_id, "archived": False},
        )
        return [row_to_experiment(r) for r in rs.fetchall()]


class SigningKeyRepository:
    def __init__(self, db: Session):
        self.db = db

    def _select(self, where: str, params: dict, order: str = ""):
        return self.db.execute(
            text(f"SELECT {KEY_COLUMNS} FROM signing_keys WHERE {where} {order}").columns(
                is_active=Boolean, created_at=DateTime
            ),
            params,
        )

    def get(self, app_id: str, kid: str) -> Optional[SigningKey]:
        row = self._select("app_id=:a AND kid=:k", {"a": app_id, "k": kid}).fetchone()
        return row_to_key(row) if row else None

    def get_active(self, app_id: str) -> Optional[SigningKey]:
        row = self._select("app_id=:a AND is_active=:t", {"a": app_id, "t": True}).fetchone()
        return row_to_key(row) if row else None

    def list_for_app(self, app_id: str) -> List[SigningKey]:
        rs = self._select("app_id=:a", {"a": app_id}, order="ORDER BY is_active DESC, created_at DESC")
        return [row_to_key(r) for r in rs.fetchall()]

    def insert(self, key: SigningKey) -> None:
        self.db.execute(
            text(
                f"""INSERT INTO signing_keys ({KEY_COLUMNS})
                    VALUES (:id, :app_id, :kid, :public_key, :private_key, :algorithm, :is_active, :created_at)"""
            ).bindparams(bindparam("created_at", type_=DateTime)),
            {
                "id": key.id,
                "app_id": key.app_id,
                "kid": key.kid,
                "public_key": key.public_key,
                "private_key": key.private_key,
                "algorithm": key.algorithm,
                "is_active": key.is_active,
                "created_at": key.created_at,
            },
        )

    def deactivate_others(self, app_id: str, kid: str) -> None:
        self.db.execute(
            text("UPDATE signing_keys SET is_active=:f WHERE app_id=:a AND kid<>:k AND is_active=:t"),
            {"a": app_id, "k": kid, "t": True, "f": False},
        )

    def activate(self, app_id: str, kid: str) -> int:
        rs = self.db.execute(
            text("UPDATE signing_keys SET is_active=:t WHERE app_id=:a AND kid=:k"),
            {"a": app_id, "k": kid, "t": True},
        )
        return rs.rowcount

    def delete_inactive(self, app_id: str, kid: str) -> int:
        rs = self.db.execute(
            text("DELETE FROM signing_keys WHERE app_id=:a AND kid=:k AND is_active=:f"),
            {"a": app_id, "k": kid, "f": False},
        )
        return rs.rowcount


class PublishRecordRepository:
    def __init__(self, db: Session):
        self.db = db

    def versions_with_prefix(self, app_id: str, prefix: str) -> List[str]:
        rs = self.db.execute(
            text(
                """SELECT version FROM publish_records WHERE app_id=:a AND version LIKE :p
                   UNION
                   SELECT version FROM version_reservations WHERE app_id=:a AND version LIKE :p"""
            ),
            {"a": app_id, "p": f"{prefix}%"},
        )
        return [r[0] for r in rs.fetchall()]

    def reserve_version(self, app_id: str, version: str, reserved_at) -> None:
        """Commit a reservation for ``version``. Raises Conflict if it was already handed out."""
        try:
            self.db.execute(
                text(
                    "INSERT INTO version_reservations (app_id, version, reserved_at) VALUES (:a, :v, :at)"
                ).bindparams(bindparam("at", type_=DateTime)),
                {"a": app_id, "v": version, "at": reserved_at},
            )
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise Conflict(f"Version {version} was already allocated for app {app_id}") from exc

    def list_recent(self, app_id: str, limit: int = 50) -> List[PublishRecord]:
        rs = self.db.execute(
            text(
                """SELECT id, app_id, version, published_at, published_by, changelog, diff_summary, artifact_size
                   FROM publish_records WHERE app_id=:a ORDER BY published_at DESC LIMIT :n"""
            ).columns(published_at=DateTime, diff_summary=JSON),
            {"a": app_id, "n": limit},
        )
        return [
            PublishRecord(
                id=r.id,
                app_id=r.app_id,
                version=r.version,
                published_at=r.published_at,
                published_by=r.published_by,
                changelog=r.changelog,
                diff_summary=r.diff_summary or {},
                artifact_size=r.artifact_size,
            )
            for r in rs.fetchall()
        ]
