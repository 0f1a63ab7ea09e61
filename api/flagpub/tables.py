"""Relational schema of the entities the publish pipeline reads and writes.

Queries live in :mod:`flagpub.repositories`; this module only describes the
tables so they can be created for tests and migrations.
"""
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    text,
)

metadata = MetaData()

apps = Table(
    "apps",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(200), nullable=False),
    Column("identifier", String(128), nullable=False, unique=True),
    Column("artifact_url", Text, nullable=False),
    Column("fetch_policy", JSON, nullable=False),
    Column("public_keys", JSON, nullable=False),
    Column("storage_config", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

flags = Table(
    "flags",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("app_id", String(36), ForeignKey("apps.id", ondelete="CASCADE"), nullable=False),
    Column("key", String(64), nullable=False),
    Column("type", String(16), nullable=False),
    Column("description", Text),
    Column("default_values", JSON),
    Column("variants", JSON),
    Column("archived", Boolean, nullable=False, default=False),
    Column("archived_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True)),
    UniqueConstraint("app_id", "key", name="uq_flags_app_key"),
)

cohorts = Table(
    "cohorts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("app_id", String(36), ForeignKey("apps.id", ondelete="CASCADE"), nullable=False),
    Column("key", String(64), nullable=False),
    Column("name", String(200), nullable=False),
    Column("description", Text),
    Column("conditions", JSON),
    UniqueConstraint("app_id", "key", name="uq_cohorts_app_key"),
)

experiments = Table(
    "experiments",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("app_id", String(36), ForeignKey("apps.id", ondelete="CASCADE"), nullable=False),
    Column("key", String(64), nullable=False),
    Column("name", String(200), nullable=False),
    Column("description", Text),
    Column("kind", String(16), nullable=False),
    Column("salt", String(64), nullable=False),
    Column("conditions", JSON),
    Column("flag_ids", JSON),
    Column("variants", JSON),
    Column("percentage", Float),
    Column("rollout_values", JSON),
    Column("archived", Boolean, nullable=False, default=False),
    Column("archived_at", DateTime(timezone=True)),
    UniqueConstraint("app_id", "key", name="uq_experiments_app_key"),
)

signing_keys = Table(
    "signing_keys",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("app_id", String(36), ForeignKey("apps.id", ondelete="CASCADE"), nullable=False),
    Column("kid", String(64), nullable=False),
    Column("public_key", Text, nullable=False),
    Column("private_key", Text, nullable=False),
    Column("algorithm", String(16), nullable=False),
    Column("is_active", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("app_id", "kid", name="uq_signing_keys_app_kid"),
)

# At most one active key per app, whatever the application code does
Index(
    "uq_signing_keys_one_active",
    signing_keys.c.app_id,
    unique=True,
    postgresql_where=text("is_active"),
    sqlite_where=text("is_active"),
)

publish_records = Table(
    "publish_records",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("app_id", String(36), ForeignKey("apps.id", ondelete="CASCADE"), nullable=False),
    Column("version", String(32), nullable=False),
    Column("published_at", DateTime(timezone=True), nullable=False),
    Column("published_by", String(200), nullable=False),
    Column("changelog", Text, nullable=False),
    Column("diff_summary", JSON, nullable=False),
    Column("artifact_size", Integer, nullable=False),
    UniqueConstraint("app_id", "version", name="uq_publish_records_app_version"),
)

# Every allocated version, committed before the artifact is signed, so a
# version whose publish record never landed is still never handed out again
version_reservations = Table(
    "version_reservations",
    metadata,
    Column("app_id", String(36), ForeignKey("apps.id", ondelete="CASCADE"), primary_key=True),
    Column("version", String(32), primary_key=True),
    Column("reserved_at", DateTime(timezone=True), nullable=False),
)
