import pytest
from sqlalchemy import select

from audience_app.errors import (
    EmptyInputError,
    PipelineError,
    RemoteError,
    SchemaError,
    SyncFailedError,
    UnknownTenantError,
)
from audience_app.models import LogAlreadyFinalizedError, ProcessingLog, RunStatus, SyncLog, db
from audience_app.pipeline import reconcile as reconcile_module
from audience_app.pipeline.ingestion import eligible_members, ingest_contact_file, sync_tenant_audience
from audience_app.pipeline.sync import AudienceSyncService, SyncSettings
from conftest import FakeAudienceClient

CONTACTS_CSV = (
    "first_name,last_name,email,phone\n"
    "Ada,Lovelace,ada@x.com,\n"
    "Grace,Hopper,,5551234567\n"
    "Alan,Turing,,\n"
)


def _logs(model, tenant_id):
    db.session.expire_all()
    return db.session.scalars(select(model).where(model.tenant_id == tenant_id).order_by(model.id)).all()


def _service(client, batch_size=1000):
    return AudienceSyncService(
        client,
        settings=SyncSettings(batch_size=batch_size, max_attempts=1, backoff_base_seconds=0),
        sleep_fn=lambda seconds: None,
    )


def test_ingestion_writes_completed_log(make_tenant):
    tenant = make_tenant()

    result = ingest_contact_file(tenant.id, "contacts.csv", CONTACTS_CSV)

    assert result.total == 3
    assert result.summary.created == 3
    [log] = _logs(ProcessingLog, tenant.id)
    assert log.id == result.log_id
    assert log.status is RunStatus.COMPLETED
    assert (log.total_records, log.new_records, log.no_identifier_records) == (3, 3, 1)
    assert log.error_message is None
    assert log.finished_at is not None


@pytest.mark.parametrize(
    "content, error",
    [
        ("", EmptyInputError),
        ("email,phone\na@x.com,1\n", SchemaError),
    ],
)
def test_parse_failure_finalizes_log_as_failed(make_tenant, content, error):
    tenant = make_tenant()

    with pytest.raises(error):
        ingest_contact_file(tenant.id, "broken.csv", content)

    [log] = _logs(ProcessingLog, tenant.id)
    assert log.status is RunStatus.FAILED
    assert log.error_message
    assert log.new_records == 0


def test_unknown_tenant_writes_no_log():
    with pytest.raises(UnknownTenantError):
        ingest_contact_file(404, "contacts.csv", CONTACTS_CSV)

    assert db.session.scalars(select(ProcessingLog)).all() == []


def test_row_errors_are_kept_on_completed_log(make_tenant, monkeypatch):
    tenant = make_tenant()
    real_find_match = reconcile_module.find_match

    def flaky_find_match(session, contact, tenant_id, mode, **kwargs):
        if contact.first_name == "Grace":
            raise RuntimeError("deadlock detected")
        return real_find_match(session, contact, tenant_id, mode, **kwargs)

    monkeypatch.setattr(reconcile_module, "find_match", flaky_find_match)

    result = ingest_contact_file(tenant.id, "contacts.csv", CONTACTS_CSV)

    assert result.summary.errors == ["Row 2: deadlock detected"]
    [log] = _logs(ProcessingLog, tenant.id)
    assert log.status is RunStatus.COMPLETED
    assert log.error_message == "Row 2: deadlock detected"


def test_processing_log_finalizes_once(make_tenant):
    tenant = make_tenant()
    result = ingest_contact_file(tenant.id, "contacts.csv", CONTACTS_CSV)
    log = db.session.get(ProcessingLog, result.log_id)

    with pytest.raises(LogAlreadyFinalizedError):
        log.finalize(RunStatus.FAILED, error_message="late failure")


def test_eligible_members_excludes_expired(make_tenant, make_member):
    tenant = make_tenant()
    make_member(tenant, first_name="Live", email="live@x.com", remaining_days=3)
    make_member(tenant, first_name="Dead", email="dead@x.com", remaining_days=0)

    members = eligible_members(db.session, tenant.id)

    assert [member.first_name for member in members] == ["Live"]


def test_sync_writes_completed_log(make_tenant, make_member):
    tenant = make_tenant(audience_id="aud-1")
    make_member(tenant, email="a@x.com")
    make_member(tenant, phone="5551234567")
    make_member(tenant)
    client = FakeAudienceClient()

    result = sync_tenant_audience(tenant.id, _service(client))

    assert (result.eligible, result.uploaded, result.excluded) == (3, 2, 1)
    [log] = _logs(SyncLog, tenant.id)
    assert log.id == result.sync_log_id
    assert log.status is RunStatus.COMPLETED
    assert (log.total_records, log.success_count, log.failed_count) == (2, 2, 0)
    assert log.sync_type == "add"


def test_sync_without_eligible_members_writes_nothing(make_tenant):
    tenant = make_tenant(audience_id="aud-1")
    client = FakeAudienceClient()

    result = sync_tenant_audience(tenant.id, _service(client))

    assert result.eligible == 0
    assert result.sync_log_id is None
    assert client.calls == []
    assert _logs(SyncLog, tenant.id) == []


def test_failed_sync_records_partial_progress(make_tenant, make_member):
    tenant = make_tenant(audience_id="aud-1")
    for index in range(3):
        make_member(tenant, email=f"user{index}@x.com")
    client = FakeAudienceClient(failures=[None, RemoteError("Invalid parameter", code=100)])

    with pytest.raises(SyncFailedError):
        sync_tenant_audience(tenant.id, _service(client, batch_size=2))

    [log] = _logs(SyncLog, tenant.id)
    assert log.status is RunStatus.FAILED
    assert (log.total_records, log.success_count, log.failed_count) == (3, 2, 1)
    assert "[100] Invalid parameter" in log.error_message


def test_sync_requires_audience(make_tenant):
    tenant = make_tenant()

    with pytest.raises(PipelineError, match="no remote audience"):
        sync_tenant_audience(tenant.id, _service(FakeAudienceClient()))
