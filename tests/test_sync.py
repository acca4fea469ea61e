import hashlib

import pytest

from audience_app.errors import RemoteError, SyncFailedError
from audience_app.pipeline.normalizer import ContactRecord
from audience_app.pipeline.sync import (
    SYNC_SCHEMA,
    AudienceSyncService,
    SyncSettings,
    chunk_records,
    format_sync_records,
    to_sync_record,
)
from conftest import FakeAudienceClient


def _sha(value):
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _members(count):
    return [ContactRecord(f"First{i}", f"Last{i}", email=f"user{i}@x.com") for i in range(count)]


class SleepRecorder:
    def __init__(self):
        self.delays = []

    def __call__(self, seconds):
        self.delays.append(seconds)


def _service(client, *, batch_size=1000, max_attempts=3, backoff=1.0):
    sleeper = SleepRecorder()
    service = AudienceSyncService(
        client,
        settings=SyncSettings(batch_size=batch_size, max_attempts=max_attempts, backoff_base_seconds=backoff),
        sleep_fn=sleeper,
    )
    return service, sleeper


def test_sync_record_hashes_normalized_fields():
    record = to_sync_record(ContactRecord(" John ", "DOE", email=" John@X.com ", phone="(555) 123-4567"))

    assert record.email == _sha("john@x.com")
    assert record.phone == _sha("5551234567")
    assert record.fn == _sha("john")
    assert record.ln == _sha("doe")
    assert record.as_row() == [record.email, record.phone, record.fn, record.ln]


def test_blank_fields_are_left_empty():
    record = to_sync_record(ContactRecord("", "Doe", email="jane@x.com"))

    assert record.phone is None
    assert record.fn is None
    assert record.as_row()[1] == ""
    assert set(record.as_dict()) == {"EMAIL", "LN"}


def test_members_without_identifier_are_excluded():
    members = [ContactRecord("Jane", "Doe", email="jane@x.com"), ContactRecord("No", "Contact")]

    assert len(format_sync_records(members)) == 1


def test_chunking_keeps_order():
    records = format_sync_records(_members(5))

    chunks = list(chunk_records(records, 2))

    assert [len(chunk) for chunk in chunks] == [2, 2, 1]
    assert [record for chunk in chunks for record in chunk] == records


def test_sync_uploads_in_batches():
    client = FakeAudienceClient()
    service, _ = _service(client, batch_size=2)

    summary = service.sync("aud-1", _members(5), "Tenant")

    assert summary.uploaded == 5
    assert summary.batches == 3
    assert [call[0] for call in client.calls] == ["add", "add", "add"]
    assert client.calls[0][2] == list(SYNC_SCHEMA)
    assert [len(call[3]) for call in client.calls] == [2, 2, 1]


def test_second_batch_failure_aborts_with_partial_count():
    client = FakeAudienceClient(failures=[None, RemoteError("Invalid parameter", code=100)])
    service, sleeper = _service(client, batch_size=1000)

    with pytest.raises(SyncFailedError) as excinfo:
        service.sync("aud-1", _members(1500), "Tenant")

    exc = excinfo.value
    assert exc.uploaded == 1000
    assert exc.batch_number == 2
    assert exc.remote_message == "[100] Invalid parameter"
    assert str(exc) == "Failed to upload batch 2: [100] Invalid parameter"
    assert len(client.calls) == 2
    assert sleeper.delays == []


def test_later_batches_are_never_attempted_after_failure():
    client = FakeAudienceClient(failures=[RemoteError("Bad audience")])
    service, _ = _service(client, batch_size=1)

    with pytest.raises(SyncFailedError) as excinfo:
        service.sync("aud-1", _members(3), "Tenant")

    assert excinfo.value.uploaded == 0
    assert excinfo.value.remote_message == "[UNKNOWN] Bad audience"
    assert len(client.calls) == 1


def test_rate_limit_backs_off_exponentially_then_succeeds(rate_limited_error):
    client = FakeAudienceClient(failures=[rate_limited_error, rate_limited_error, None])
    service, sleeper = _service(client, max_attempts=3, backoff=1.0)

    summary = service.sync("aud-1", _members(2), "Tenant")

    assert summary.uploaded == 2
    assert sleeper.delays == [1.0, 2.0]
    assert len(client.calls) == 3


def test_rate_limit_exhausting_attempts_fails(rate_limited_error):
    client = FakeAudienceClient(failures=[rate_limited_error] * 3)
    service, sleeper = _service(client, max_attempts=3, backoff=0.5)

    with pytest.raises(SyncFailedError) as excinfo:
        service.sync("aud-1", _members(2), "Tenant")

    assert excinfo.value.uploaded == 0
    assert sleeper.delays == [0.5, 1.0]
    assert len(client.calls) == 3


def test_nothing_to_send_skips_remote_calls():
    client = FakeAudienceClient()
    service, _ = _service(client)

    summary = service.sync("aud-1", [ContactRecord("No", "Contact")], "Tenant")

    assert summary.uploaded == 0
    assert summary.excluded == 1
    assert client.calls == []


def test_remove_uses_delete_operation():
    client = FakeAudienceClient(failures=[RemoteError("gone", code=2650)])
    service, _ = _service(client)

    with pytest.raises(SyncFailedError, match="Failed to remove batch 1"):
        service.remove("aud-1", _members(1), "Tenant")

    assert client.calls[0][0] == "remove"


def test_single_attempt_setting_disables_backoff(rate_limited_error):
    client = FakeAudienceClient(failures=[rate_limited_error])
    service, sleeper = _service(client, max_attempts=1)

    with pytest.raises(SyncFailedError) as excinfo:
        service.sync("aud-1", _members(2), "Tenant")

    assert excinfo.value.batch_number == 1
    assert sleeper.delays == []
    assert len(client.calls) == 1
