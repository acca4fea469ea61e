import json
from pathlib import Path
from unittest.mock import Mock, patch

from sqlalchemy import select

from audience_app.models import IdentityRecord, ProcessingLog, PurchaseRemoval, RunStatus, Tenant, db
from audience_app.services import get_vault


def _write_csv(tmp_path: Path, name="contacts.csv", body=None) -> Path:
    csv_file = tmp_path / name
    csv_file.write_text(
        body
        or (
            "first_name,last_name,email,phone\n"
            "Ada,Lovelace,ada@example.org,\n"
            "Grace,Hopper,,(555) 123-4567\n"
        ),
        encoding="utf-8",
    )
    return csv_file


def _json_tail(output: str):
    return json.loads(output[output.index("{") :])


def test_pipeline_group_lists_tenants(runner, make_tenant, make_member):
    tenant = make_tenant("Acme", audience_id="aud-1")
    make_member(tenant, email="a@x.com")
    make_tenant("Sleepy", is_active=False)

    result = runner.invoke(args=["pipeline"])

    assert result.exit_code == 0, result.output
    assert "acme (active, aud-1): 1 members" in result.output
    assert "sleepy (inactive, no audience): 0 members" in result.output


def test_pipeline_group_without_tenants(runner):
    result = runner.invoke(args=["pipeline"])

    assert result.exit_code == 0, result.output
    assert "No tenants configured." in result.output


def test_ingest_inline_prints_summary(runner, make_tenant, tmp_path):
    tenant = make_tenant("Acme")
    csv_path = _write_csv(tmp_path)

    result = runner.invoke(
        args=["pipeline", "ingest", "--tenant", "acme", "--file", str(csv_path), "--inline", "--summary-json"]
    )

    assert result.exit_code == 0, result.output
    assert "Ingested contacts.csv for Acme" in result.output
    payload = _json_tail(result.output)
    assert payload["created"] == 2
    assert payload["total"] == 2
    log = db.session.get(ProcessingLog, payload["log_id"])
    assert log.status is RunStatus.COMPLETED
    assert log.tenant_id == tenant.id


def test_ingest_accepts_numeric_tenant_id(runner, make_tenant, tmp_path):
    tenant = make_tenant("Acme")
    csv_path = _write_csv(tmp_path)

    result = runner.invoke(args=["pipeline", "ingest", "--tenant", str(tenant.id), "--file", str(csv_path), "--inline"])

    assert result.exit_code == 0, result.output
    assert db.session.scalars(select(IdentityRecord)).all()


def test_ingest_queues_by_default(runner, make_tenant, tmp_path):
    tenant = make_tenant("Acme")
    csv_path = _write_csv(tmp_path)

    async_result = Mock()
    async_result.id = "celery-task-123"
    celery_app = Mock()
    celery_app.send_task.return_value = async_result

    with patch("audience_app.cli._resolve_celery", return_value=celery_app):
        result = runner.invoke(args=["pipeline", "ingest", "--tenant", "acme", "--file", str(csv_path)])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output.strip())
    assert payload["status"] == "queued"
    assert payload["task_id"] == "celery-task-123"
    celery_app.send_task.assert_called_once_with(
        "pipeline.ingest_file",
        kwargs={"tenant_id": tenant.id, "file_path": str(csv_path.resolve()), "mode": "append"},
    )
    assert db.session.scalars(select(ProcessingLog)).all() == []


def test_summary_json_requires_inline(runner, make_tenant, tmp_path):
    make_tenant("Acme")
    csv_path = _write_csv(tmp_path)

    with patch("audience_app.cli._resolve_celery") as mock_resolve:
        result = runner.invoke(args=["pipeline", "ingest", "--tenant", "acme", "--file", str(csv_path), "--summary-json"])

    assert result.exit_code != 0
    assert "--summary-json is only available for --inline runs." in result.output
    mock_resolve.assert_not_called()


def test_unknown_tenant_is_reported(runner, tmp_path):
    csv_path = _write_csv(tmp_path)

    result = runner.invoke(args=["pipeline", "ingest", "--tenant", "ghost", "--file", str(csv_path), "--inline"])

    assert result.exit_code != 0
    assert "Tenant 'ghost' not found." in result.output


def test_ingest_inline_reports_format_error(runner, make_tenant, tmp_path):
    make_tenant("Acme")
    csv_path = _write_csv(tmp_path, body="email\nada@x.com\n")

    result = runner.invoke(args=["pipeline", "ingest", "--tenant", "acme", "--file", str(csv_path), "--inline"])

    assert result.exit_code != 0
    assert "Ingestion failed: Invalid CSV format" in result.output


def test_run_daily_inline(runner, make_tenant, source_root, fake_platform):
    make_tenant("Acme", audience_id="aud-acme")
    (source_root / "acme").mkdir()
    _write_csv(source_root / "acme", name="today.csv")

    result = runner.invoke(args=["pipeline", "run-daily", "--inline", "--summary-json"])

    assert result.exit_code == 0, result.output
    assert "[success] Acme: added=2 synced=2" in result.output
    payload = _json_tail(result.output)
    assert payload["total_added"] == 2
    assert payload["total_synced"] == 2
    assert fake_platform.rows_sent == 2


def test_run_daily_queues_by_default(runner):
    async_result = Mock()
    async_result.id = "daily-1"
    celery_app = Mock()
    celery_app.send_task.return_value = async_result

    with patch("audience_app.cli._resolve_celery", return_value=celery_app):
        result = runner.invoke(args=["pipeline", "run-daily", "--mode", "match-append"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output.strip())
    assert payload == {"task": "pipeline.run_daily", "task_id": "daily-1", "status": "queued", "mode": "match-append"}


def test_sync_inline_uses_platform_client(runner, make_tenant, make_member, fake_platform):
    tenant = make_tenant("Acme", audience_id="aud-acme")
    make_member(tenant, email="a@x.com")

    result = runner.invoke(args=["pipeline", "sync", "--tenant", "acme", "--inline"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["uploaded"] == 1
    assert fake_platform.calls[0][1] == "aud-acme"


def test_sync_without_credentials_fails(runner, make_tenant):
    make_tenant("Acme", audience_id="aud-acme")

    result = runner.invoke(args=["pipeline", "sync", "--tenant", "acme", "--inline"])

    assert result.exit_code != 0
    assert "META_ACCESS_TOKEN and META_AD_ACCOUNT_ID must be configured" in result.output


def test_sync_requires_audience(runner, make_tenant):
    make_tenant("Acme")

    result = runner.invoke(args=["pipeline", "sync", "--tenant", "acme", "--inline"])

    assert result.exit_code != 0
    assert "has no remote audience" in result.output


def test_retention_command(runner, make_tenant, make_member):
    tenant = make_tenant()
    make_member(tenant, email="a@x.com", remaining_days=1)
    make_member(tenant, email="b@x.com", remaining_days=9)

    result = runner.invoke(args=["pipeline", "retention"])

    assert result.exit_code == 0, result.output
    assert "Decremented 2 member(s); expired 1." in result.output


def test_suppress_skip_remote(runner, make_tenant, make_member, tmp_path, fake_platform):
    tenant = make_tenant("Acme", audience_id="aud-acme")
    make_member(tenant, first_name="Ada", last_name="Lovelace", email="ada@example.org")
    csv_path = _write_csv(tmp_path, name="purchases.csv")

    result = runner.invoke(
        args=["pipeline", "suppress", "--tenant", "acme", "--file", str(csv_path), "--skip-remote"]
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["removed_from_audience"] == 1
    assert payload["removed_from_remote"] == 0
    assert fake_platform.calls == []
    assert db.session.scalars(select(PurchaseRemoval)).one().source_file == "purchases.csv"


def test_create_audience_attaches_id(runner, make_tenant, fake_platform):
    tenant = make_tenant("Acme")

    result = runner.invoke(args=["pipeline", "create-audience", "--tenant", "acme"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == {"tenant": "acme", "audience_id": "aud-created-1"}
    assert fake_platform.created == [("Acme Audience", "Customer list audience for Acme")]
    db.session.expire_all()
    assert db.session.get(Tenant, tenant.id).audience_id == "aud-created-1"


def test_create_audience_refuses_to_replace_without_force(runner, make_tenant, fake_platform):
    make_tenant("Acme", audience_id="aud-existing")

    result = runner.invoke(args=["pipeline", "create-audience", "--tenant", "acme"])

    assert result.exit_code != 0
    assert "Use --force to replace it." in result.output
    assert fake_platform.created == []


def test_audience_stats(runner, make_tenant, fake_platform):
    make_tenant("Acme", audience_id="aud-acme")

    result = runner.invoke(args=["pipeline", "audience-stats", "--tenant", "acme"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == {"tenant": "acme", "audience_id": "aud-acme", "size": 1234, "status": "200"}


def test_encrypt_secret_round_trips_through_vault(runner, app):
    result = runner.invoke(args=["pipeline", "encrypt-secret", "--value", "hunter2"])

    assert result.exit_code == 0, result.output
    token = result.output.strip()
    assert token.count(":") == 2
    assert get_vault(app).decrypt(token) == "hunter2"


def test_add_tenant_encrypts_password(runner, app):
    result = runner.invoke(
        args=[
            "pipeline",
            "add-tenant",
            "--name",
            "Acme",
            "--slug",
            "acme",
            "--remote-host",
            "sftp.acme.test",
            "--remote-username",
            "svc",
            "--remote-password",
            "hunter2",
        ]
    )

    assert result.exit_code == 0, result.output
    assert "hunter2" not in result.output
    tenant = Tenant.find_by_slug("acme")
    assert tenant.remote_password_encrypted != "hunter2"
    assert get_vault(app).decrypt(tenant.remote_password_encrypted) == "hunter2"


def test_add_tenant_rejects_duplicate_slug(runner, make_tenant):
    make_tenant("Acme")

    result = runner.invoke(args=["pipeline", "add-tenant", "--name", "Acme Again", "--slug", "acme"])

    assert result.exit_code != 0
    assert "Tenant 'acme' already exists." in result.output


def test_update_member_reenrolls(runner, make_tenant, make_member):
    member = make_member(make_tenant(), first_name="Ada", last_name="Lovelace", remaining_days=4)

    result = runner.invoke(args=["pipeline", "update-member", "--id", str(member.id), "--phone", "555-123-4567"])

    assert result.exit_code == 0, result.output
    payload = _json_tail(result.output)
    assert payload["phone"] == "5551234567"
    assert payload["status"] == "active"
    assert payload["remaining_days"] == 30
    assert payload["reenrolled"] is True


def test_update_member_requires_a_field(runner, make_tenant, make_member):
    member = make_member(make_tenant())

    result = runner.invoke(args=["pipeline", "update-member", "--id", str(member.id)])

    assert result.exit_code != 0
    assert "Pass at least one of --email" in result.output


def test_update_member_unknown_id(runner):
    result = runner.invoke(args=["pipeline", "update-member", "--id", "4242", "--email", "ada@x.com"])

    assert result.exit_code != 0
    assert "Audience member 4242 does not exist." in result.output
