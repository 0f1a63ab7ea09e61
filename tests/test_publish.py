import pytest
from sqlalchemy.exc import OperationalError

from conftest import APP_IDENTIFIER, add_flag, add_rollout, every_env
from flagpub import tables
from flagpub.cache import LocalAppLock
from flagpub.config import settings
from flagpub.errors import (
    AuditIncomplete,
    Conflict,
    MigrationRequired,
    NotFound,
    SigningKeyMissing,
    StorageConfigurationError,
    StorageError,
    ValidationError,
)
from flagpub.repositories import AppRepository, PublishRecordRepository
from flagpub.services import audit
from flagpub.services import publish as publish_module
from flagpub.services import signing
from flagpub.services.publish import PublishPipeline, PublishStage
from flagpub.services.signing import SigningKeyManager
from flagpub.services.storage import artifact_key

KEY = artifact_key(APP_IDENTIFIER)


def _records(db, app_id):
    return PublishRecordRepository(db).list_recent(app_id)


def test_publish_uploads_signed_artifact_and_records_it(db, pipeline, store, notifications, app_row, active_key):
    add_flag(db, app_row.id, "ui/theme")

    result = pipeline.publish(app_row.id, "First release", "alice")

    assert result.version == "2026-03-01.1"
    assert result.published_at == "2026-03-01T09:30:00.000Z"
    assert result.kid == active_key.kid
    assert [(c.action, c.key) for c in result.changes.changes] == [("added", "ui/theme")]
    assert pipeline.stage == PublishStage.DONE

    envelope = store.get(KEY)
    assert result.artifact_size == len(envelope)
    payload = signing.verify(envelope, [active_key])
    assert payload["config_version"] == "2026-03-01.1"
    assert payload["schema_version"] == 2
    assert payload["metadata"] == {"changelog": "First release", "published_by": "alice"}
    assert payload["flags"]["ui/theme"]["production"]["default"] == "light"

    (record,) = _records(db, app_row.id)
    assert record.version == "2026-03-01.1"
    assert record.published_by == "alice"
    assert record.changelog == "First release"
    assert record.diff_summary["changes"][0]["key"] == "ui/theme"
    assert notifications == [(APP_IDENTIFIER, "2026-03-01.1")]


def test_republishing_unchanged_config_bumps_version_with_empty_diff(db, pipeline, clock, app_row, active_key):
    add_flag(db, app_row.id, "ui/theme")
    pipeline.publish(app_row.id, "First", "alice")
    clock.advance(minutes=5)

    result = pipeline.publish(app_row.id, "Again", "bob")

    assert result.version == "2026-03-01.2"
    assert result.changes.empty
    assert [r.version for r in _records(db, app_row.id)] == ["2026-03-01.2", "2026-03-01.1"]


def test_version_counter_restarts_each_day(db, pipeline, clock, app_row, active_key):
    pipeline.publish(app_row.id, "First", "alice")
    clock.advance(days=1)

    assert pipeline.publish(app_row.id, "Next day", "alice").version == "2026-03-02.1"


def test_diff_is_against_the_live_artifact(db, pipeline, clock, app_row, active_key):
    flag_id = add_flag(db, app_row.id, "ui/theme")
    add_flag(db, app_row.id, "old_flag")
    pipeline.publish(app_row.id, "First", "alice")
    db.execute(tables.flags.update().where(tables.flags.c.key == "old_flag").values(archived=True))
    add_rollout(db, app_row.id, "blue_rollout", [flag_id], 25, every_env({"kind": "flat", "value": "blue"}))
    clock.advance(minutes=1)

    result = pipeline.publish(app_row.id, "Roll out blue", "alice")

    assert [(c.action, c.key) for c in result.changes.changes] == [
        ("modified", "ui/theme"), ("removed", "old_flag"),
    ]
    assert result.changes.changes[0].details == ["Changed: development", "Changed: production", "Changed: staging"]


def test_unreadable_previous_artifact_is_diffed_as_absent(db, pipeline, store, app_row, active_key):
    add_flag(db, app_row.id, "ui/theme")
    store.objects[KEY] = b"garbage"

    result = pipeline.publish(app_row.id, "Recover", "alice")

    assert [c.action for c in result.changes.changes] == ["added"]


def test_publish_signs_with_an_ec_key(db, pipeline, store, app_row, monkeypatch):
    monkeypatch.setattr(settings, "SIGNING_ALGORITHM", "ES256")
    keys = SigningKeyManager(db)
    key = keys.activate(app_row.id, keys.generate(app_row.id).kid)

    result = pipeline.publish(app_row.id, "First", "alice")

    assert result.kid == key.kid
    assert signing.unverified_header(store.get(KEY))["alg"] == "ES256"
    assert pipeline.fetch_published(app_row.id)["config_version"] == result.version


def test_changelog_is_required(db, pipeline, store, app_row, active_key):
    with pytest.raises(ValidationError):
        pipeline.publish(app_row.id, "   ", "alice")

    assert store.puts == []


def test_unknown_app(db, pipeline):
    with pytest.raises(NotFound):
        pipeline.publish("missing", "x", "alice")


def test_missing_signing_key_fails_before_upload(db, pipeline, store, app_row):
    add_flag(db, app_row.id, "ui/theme")

    with pytest.raises(SigningKeyMissing) as exc_info:
        pipeline.publish(app_row.id, "First", "alice")

    assert exc_info.value.stage == "signing"
    assert exc_info.value.artifact_live is False
    assert pipeline.stage == PublishStage.FAILED
    assert store.puts == []
    assert _records(db, app_row.id) == []


def test_compile_failure_stops_pipeline(db, pipeline, store, notifications, app_row, active_key):
    add_flag(db, app_row.id, "legacy", defaults={"production": True})

    with pytest.raises(MigrationRequired) as exc_info:
        pipeline.publish(app_row.id, "First", "alice")

    assert exc_info.value.stage == "compiling"
    assert store.puts == []
    assert notifications == []


def test_oversized_artifact_is_rejected_before_upload(db, pipeline, store, app_row, active_key, monkeypatch):
    monkeypatch.setattr(settings, "MAX_ARTIFACT_BYTES", 100)

    with pytest.raises(ValidationError, match="byte limit") as exc_info:
        pipeline.publish(app_row.id, "First", "alice")

    assert exc_info.value.stage == "signing"
    assert store.puts == []


def test_upload_failure_writes_no_record(db, pipeline, store, app_row, active_key):
    store.fail_put = StorageError("Upload of s3://configs/x failed: AccessDenied")

    with pytest.raises(StorageError) as exc_info:
        pipeline.publish(app_row.id, "First", "alice")

    assert exc_info.value.stage == "uploading"
    assert exc_info.value.artifact_live is False
    assert _records(db, app_row.id) == []


def test_audit_failure_after_upload_reports_live_artifact(db, pipeline, store, notifications, app_row,
                                                          active_key, monkeypatch):
    def broken(*args, **kwargs):
        raise OperationalError("INSERT INTO publish_records", {}, Exception("database is locked"))

    monkeypatch.setattr(publish_module, "record_publish_with_retry", broken)

    with pytest.raises(AuditIncomplete) as exc_info:
        pipeline.publish(app_row.id, "First", "alice")

    err = exc_info.value
    assert err.artifact_live is True
    assert err.version == "2026-03-01.1"
    assert err.stage == "recording_audit"
    assert err.to_dict()["artifact_live"] is True
    assert store.puts == [KEY]
    assert notifications == []


def test_publish_after_audit_failure_allocates_a_fresh_version(db, pipeline, store, clock, app_row,
                                                                active_key, monkeypatch):
    def broken(*args, **kwargs):
        raise OperationalError("INSERT INTO publish_records", {}, Exception("database is locked"))

    with monkeypatch.context() as m:
        m.setattr(publish_module, "record_publish_with_retry", broken)
        with pytest.raises(AuditIncomplete) as exc_info:
            pipeline.publish(app_row.id, "First", "alice")
    clock.advance(minutes=1)

    result = pipeline.publish(app_row.id, "Retry", "alice")

    assert exc_info.value.version == "2026-03-01.1"
    assert result.version == "2026-03-01.2"
    assert signing.decode_unverified(store.get(KEY))["config_version"] == "2026-03-01.2"
    assert [r.version for r in _records(db, app_row.id)] == ["2026-03-01.2"]


def test_version_of_a_failed_publish_is_not_reused(db, pipeline, store, app_row, active_key):
    store.fail_put = StorageError("Upload of s3://configs/x failed: SlowDown")
    with pytest.raises(StorageError):
        pipeline.publish(app_row.id, "First", "alice")
    store.fail_put = None

    assert pipeline.publish(app_row.id, "Again", "alice").version == "2026-03-01.2"


def test_duplicate_allocation_fails_before_upload(db, pipeline, store, clock, app_row, active_key, monkeypatch):
    pipeline.publish(app_row.id, "First", "alice")
    clock.advance(minutes=1)
    monkeypatch.setattr(pipeline.allocator, "allocate", lambda app_id, as_of=None: "2026-03-01.1")

    with pytest.raises(Conflict, match="already allocated") as exc_info:
        pipeline.publish(app_row.id, "Second", "alice")

    assert exc_info.value.stage == "version_allocated"
    assert exc_info.value.artifact_live is False
    assert store.puts == [KEY]


def test_record_without_reservation_is_reported_as_audit_incomplete(db, pipeline, clock, app_row, active_key,
                                                                    monkeypatch):
    pipeline.publish(app_row.id, "First", "alice")
    # a record written before versions were reserved
    db.execute(tables.version_reservations.delete())
    db.commit()
    clock.advance(minutes=1)
    monkeypatch.setattr(pipeline.allocator, "allocate", lambda app_id, as_of=None: "2026-03-01.1")

    with pytest.raises(AuditIncomplete, match="already recorded"):
        pipeline.publish(app_row.id, "Second", "alice")

    assert len(_records(db, app_row.id)) == 1


def test_audit_write_is_retried(db, store, clock, app_row, active_key, monkeypatch):
    calls = []
    real = audit.record_publish

    def flaky(db_, record):
        calls.append(record.version)
        if len(calls) == 1:
            raise OperationalError("INSERT", {}, Exception("connection reset"))
        return real(db_, record)

    monkeypatch.setattr(audit, "record_publish", flaky)
    pipeline = PublishPipeline(db, store_factory=lambda app: store, lock=LocalAppLock(wait=0.1),
                               notifier=lambda *a: None, clock=clock, audit_attempts=3, audit_max_wait=0)

    result = pipeline.publish(app_row.id, "First", "alice")

    assert calls == [result.version, result.version]
    assert len(_records(db, app_row.id)) == 1


def test_concurrent_publish_for_same_app_conflicts(db, pipeline, store, app_row, active_key):
    with pipeline.lock.hold(app_row.id):
        with pytest.raises(Conflict):
            pipeline.publish(app_row.id, "First", "alice")

    assert store.puts == []
    assert pipeline.publish(app_row.id, "First", "alice").version == "2026-03-01.1"


def test_fetch_published_verifies_with_retired_key(db, pipeline, app_row, active_key):
    pipeline.publish(app_row.id, "First", "alice")
    keys = SigningKeyManager(db)
    keys.activate(app_row.id, keys.generate(app_row.id).kid)

    payload = pipeline.fetch_published(app_row.id)

    assert payload["config_version"] == "2026-03-01.1"


def test_fetch_published_without_artifact(db, pipeline, app_row):
    with pytest.raises(NotFound):
        pipeline.fetch_published(app_row.id)


def test_history_is_newest_first_and_limited(db, pipeline, clock, app_row, active_key):
    for n in range(3):
        pipeline.publish(app_row.id, f"publish {n}", "alice")
        clock.advance(minutes=1)

    history = pipeline.history(app_row.id, limit=2)

    assert [r.changelog for r in history] == ["publish 2", "publish 1"]


class TestCreateApp:
    def test_creates_key_and_baseline_artifact(self, db, pipeline, store):
        app = pipeline.create_app(
            name="Example", identifier=APP_IDENTIFIER, artifact_url="https://cdn.example.com/config.jws",
            storage_config={"bucket": "configs"},
        )

        assert app.fetch_policy == {"min_interval_seconds": 21600, "hard_ttl_days": 7}
        (active,) = [k for k in SigningKeyManager(db).list_keys(app.id) if k.is_active]
        assert app.public_keys == [active.distribution_info()]
        payload = signing.verify(store.get(KEY), [active])
        assert payload["config_version"] == "2026-03-01.1"
        assert payload["metadata"] == {"changelog": "Initial application configuration", "published_by": "system"}
        (record,) = _records(db, app.id)
        assert record.published_by == "system"

    def test_fetch_policy_overrides_are_merged(self, db, pipeline):
        app = pipeline.create_app(
            name="Example", identifier=APP_IDENTIFIER, artifact_url="https://cdn", storage_config={},
            fetch_policy={"hard_ttl_days": 2},
        )

        assert app.fetch_policy == {"min_interval_seconds": 21600, "hard_ttl_days": 2}

    def test_storage_failure_removes_the_app(self, db, pipeline, store):
        store.fail_put = StorageError("Upload failed: InvalidAccessKeyId")

        with pytest.raises(StorageConfigurationError, match="check the storage settings"):
            pipeline.create_app(
                name="Example", identifier=APP_IDENTIFIER, artifact_url="https://cdn", storage_config={},
            )

        with pytest.raises(NotFound):
            AppRepository(db).get_by_identifier(APP_IDENTIFIER)
        assert db.execute(tables.signing_keys.select()).fetchall() == []

    def test_invalid_identifier(self, db, pipeline):
        with pytest.raises(ValidationError):
            pipeline.create_app(name="x", identifier="Not Valid", artifact_url="https://cdn", storage_config={})

    def test_duplicate_identifier(self, db, pipeline, app_row):
        with pytest.raises(Conflict):
            pipeline.create_app(name="x", identifier=APP_IDENTIFIER, artifact_url="https://cdn", storage_config={})
