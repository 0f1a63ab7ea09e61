"""Shared fixtures: in-memory SQLite schema, fake artifact store, seed helpers."""
import os

# must be set before flagpub.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PUBLISH_LOCK_BACKEND"] = "local"
os.environ.setdefault("APP_ENV", "test")

import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from flagpub import tables
from flagpub.cache import LocalAppLock
from flagpub.database import SessionLocal, engine
from flagpub.models import App
from flagpub.repositories import AppRepository
from flagpub.services.publish import PublishPipeline
from flagpub.services.signing import SigningKeyManager

APP_IDENTIFIER = "com.example.app"
DEFAULTS = {"development": "light", "staging": "light", "production": "light"}


class FakeArtifactStore:
    """Stands in for S3ArtifactStore: same put/get contract, kept in memory."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.puts: List[str] = []
        self.fail_put: Optional[Exception] = None

    def put(self, key: str, body: bytes) -> None:
        if self.fail_put is not None:
            raise self.fail_put
        self.puts.append(key)
        self.objects[key] = body

    def get(self, key: str) -> Optional[str]:
        body = self.objects.get(key)
        return body.decode("utf-8") if body is not None else None


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def db():
    tables.metadata.create_all(engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        tables.metadata.drop_all(engine)


@pytest.fixture
def store():
    return FakeArtifactStore()


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def pipeline(db, store, clock, notifications):
    return PublishPipeline(
        db,
        store_factory=lambda app: store,
        lock=LocalAppLock(wait=0.1),
        notifier=lambda identifier, version: notifications.append((identifier, version)),
        clock=clock,
        audit_attempts=1,
        audit_max_wait=0,
    )


@pytest.fixture
def app_row(db):
    return make_app(db)


@pytest.fixture
def active_key(db, app_row):
    keys = SigningKeyManager(db)
    key = keys.generate(app_row.id)
    return keys.activate(app_row.id, key.kid)


# --- seed helpers ---

def make_app(db, identifier: str = APP_IDENTIFIER, public_keys: Optional[list] = None) -> App:
    app = App(
        id=str(uuid.uuid4()),
        name="Example",
        identifier=identifier,
        artifact_url=f"https://cdn.example.com/{identifier}/config.jws",
        fetch_policy={"min_interval_seconds": 3600, "hard_ttl_days": 3},
        public_keys=public_keys or [],
        storage_config={"bucket": "configs"},
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    AppRepository(db).insert(app)
    db.commit()
    return app


def add_flag(db, app_id: str, key: str, type: str = "string", defaults=DEFAULTS,
             variants: Optional[dict] = None, archived: bool = False, description: str = "") -> str:
    flag_id = str(uuid.uuid4())
    db.execute(tables.flags.insert().values(
        id=flag_id, app_id=app_id, key=key, type=type, description=description,
        default_values=defaults, variants=variants or {}, archived=archived,
    ))
    db.commit()
    return flag_id


def add_cohort(db, app_id: str, key: str, conditions: Optional[list] = None, name: Optional[str] = None) -> str:
    cohort_id = str(uuid.uuid4())
    db.execute(tables.cohorts.insert().values(
        id=cohort_id, app_id=app_id, key=key, name=name or key, description=None,
        conditions=conditions if conditions is not None else [{"type": "country", "values": ["US"]}],
    ))
    db.commit()
    return cohort_id


def add_test(db, app_id: str, key: str, flag_ids: List[str], variants: dict,
             conditions: Optional[list] = None, archived: bool = False) -> str:
    exp_id = str(uuid.uuid4())
    db.execute(tables.experiments.insert().values(
        id=exp_id, app_id=app_id, key=key, name=key, description=None, kind="TEST",
        salt=f"{key}-salt", conditions=conditions or [], flag_ids=flag_ids, variants=variants,
        percentage=None, rollout_values=None, archived=archived,
    ))
    db.commit()
    return exp_id


def add_rollout(db, app_id: str, key: str, flag_ids: List[str], percentage, values: dict,
                conditions: Optional[list] = None) -> str:
    exp_id = str(uuid.uuid4())
    db.execute(tables.experiments.insert().values(
        id=exp_id, app_id=app_id, key=key, name=key, description=None, kind="ROLLOUT",
        salt=f"{key}-salt", conditions=conditions or [], flag_ids=flag_ids, variants=None,
        percentage=percentage, rollout_values=values, archived=False,
    ))
    db.commit()
    return exp_id


def every_env(value) -> dict:
    return {"development": value, "staging": value, "production": value}
