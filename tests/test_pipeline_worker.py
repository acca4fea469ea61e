import json
from typing import Any, Dict

import pytest
from flask import Flask
from sqlalchemy import select

from audience_app import get_celery_app, init_audience_pipeline
from audience_app.celery_app import DAILY_TASK_NAME, DEFAULT_QUEUE_NAME, build_beat_schedule
from audience_app.errors import UnknownTenantError
from audience_app.models import IdentityRecord, ProcessingLog, RunStatus, db
from conftest import EAGER_CELERY


def build_pipeline_app(**overrides) -> Flask:
    """
    Construct a minimal Flask app with the pipeline mounted for worker tests.
    """
    instance_path_override = overrides.pop("INSTANCE_PATH", None)
    if instance_path_override:
        app = Flask(__name__, instance_path=instance_path_override)
    else:
        app = Flask(__name__)
    app.config.update(SECRET_KEY="test-secret", TESTING=True, PIPELINE_BEAT_ENABLED=False)
    app.config.update(overrides)
    init_audience_pipeline(app)
    return app


def test_celery_defaults_to_sqlite_transport(tmp_path):
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir()
    sqlite_path = instance_dir / "custom.sqlite"

    app = build_pipeline_app(
        CELERY_SQLITE_PATH=str(sqlite_path),
        CELERY_CONFIG=dict(EAGER_CELERY),
        INSTANCE_PATH=str(instance_dir),
    )

    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert sqlite_path.name in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert "pipeline.run_daily" in celery_app.tasks


def test_celery_config_json_string_is_merged(tmp_path):
    app = build_pipeline_app(
        CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"),
        CELERY_CONFIG='{"task_always_eager": true, "worker_prefetch_multiplier": 4}',
    )

    celery_app = get_celery_app(app)

    assert celery_app.conf.task_always_eager is True
    assert celery_app.conf.worker_prefetch_multiplier == 4


def test_beat_schedule_runs_daily_task_at_configured_hour():
    app = Flask(__name__)
    app.config.update(PIPELINE_BEAT_ENABLED=True, PIPELINE_DAILY_HOUR_UTC=5)

    schedule = build_beat_schedule(app)

    entry = schedule["audience-daily-run"]
    assert entry["task"] == DAILY_TASK_NAME
    assert entry["schedule"].hour == {5}
    assert entry["schedule"].minute == {0}

    app.config["PIPELINE_BEAT_ENABLED"] = False
    assert build_beat_schedule(app) == {}


def test_worker_ping_cli(tmp_path):
    app = build_pipeline_app(CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"), CELERY_CONFIG=dict(EAGER_CELERY))

    runner = app.test_cli_runner()
    result = runner.invoke(args=["pipeline", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(monkeypatch, tmp_path):
    app = build_pipeline_app(CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"), CELERY_CONFIG=dict(EAGER_CELERY))
    celery_app = get_celery_app(app)
    assert celery_app is not None

    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    runner = app.test_cli_runner()
    result = runner.invoke(
        args=[
            "pipeline",
            "worker",
            "run",
            "--loglevel",
            "debug",
            "--concurrency",
            "2",
            "--pool",
            "solo",
            "--queues",
            "audience",
            "--beat",
        ]
    )

    assert result.exit_code == 0, result.output
    assert calls["argv"] == [
        "worker",
        "--loglevel",
        "debug",
        "-Q",
        "audience",
        "--concurrency",
        "2",
        "--pool",
        "solo",
        "--beat",
    ]


def test_ingest_file_task_runs_eagerly(app, make_tenant, tmp_path):
    tenant = make_tenant("Acme")
    csv_path = tmp_path / "drop.csv"
    csv_path.write_text("first_name,last_name,email\nAda,Lovelace,ada@x.com\n", encoding="utf-8")
    celery_app = get_celery_app(app)

    result = celery_app.tasks["pipeline.ingest_file"].apply(
        kwargs={"tenant_id": tenant.id, "file_path": str(csv_path), "keep_file": False}
    )

    payload = result.get()
    assert payload["created"] == 1
    assert not csv_path.exists()
    db.session.expire_all()
    log = db.session.get(ProcessingLog, payload["log_id"])
    assert log.status is RunStatus.COMPLETED


def test_ingest_file_task_missing_file(app, make_tenant, tmp_path):
    tenant = make_tenant("Acme")
    celery_app = get_celery_app(app)

    with pytest.raises(FileNotFoundError):
        celery_app.tasks["pipeline.ingest_file"].apply(
            kwargs={"tenant_id": tenant.id, "file_path": str(tmp_path / "missing.csv")}
        ).get()


def test_run_daily_task_returns_summary(app, make_tenant, source_root):
    make_tenant("Acme")
    (source_root / "acme").mkdir()
    (source_root / "acme" / "list.csv").write_text("first_name,last_name\nAda,Lovelace\n", encoding="utf-8")
    celery_app = get_celery_app(app)

    payload = celery_app.tasks[DAILY_TASK_NAME].apply(kwargs={"mode": "append"}).get()

    assert payload["tenants_processed"] == 1
    assert payload["total_added"] == 1
    db.session.expire_all()
    assert len(db.session.scalars(select(IdentityRecord)).all()) == 1


def test_sync_tenant_task_rejects_unknown_tenant(app, fake_platform):
    celery_app = get_celery_app(app)

    with pytest.raises(UnknownTenantError):
        celery_app.tasks["pipeline.sync_tenant"].apply(kwargs={"tenant_id": 999}).get()


def test_sync_tenant_task_uploads(app, make_tenant, make_member, fake_platform):
    tenant = make_tenant("Acme", audience_id="aud-acme")
    make_member(tenant, email="a@x.com")
    celery_app = get_celery_app(app)

    payload = celery_app.tasks["pipeline.sync_tenant"].apply(kwargs={"tenant_id": tenant.id}).get()

    assert payload["uploaded"] == 1
    assert fake_platform.rows_sent == 1


def test_retention_tick_task(app, make_tenant, make_member):
    tenant = make_tenant()
    make_member(tenant, email="a@x.com", remaining_days=1)
    celery_app = get_celery_app(app)

    payload = celery_app.tasks["pipeline.retention_tick"].apply().get()

    assert payload == {"decremented": 1, "expired": 1}
