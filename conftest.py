# conftest.py

import os
from pathlib import Path

import pytest

# Set testing environment BEFORE importing app so app.py picks TestingConfig
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import app as flask_app  # noqa: E402
from audience_app.errors import RemoteError  # noqa: E402
from audience_app.models import IdentityRecord, IdentityStatus, Tenant, db  # noqa: E402
from audience_app.platform import AudienceStats  # noqa: E402
from audience_app.services import EXTENSION_KEY  # noqa: E402

CRON_SECRET = "test-cron-secret"
EAGER_CELERY = {"task_always_eager": True, "task_eager_propagates": True}


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application"""
    source_root = tmp_path / "sources"
    source_root.mkdir()

    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "MONITORING_ENABLED": False,
            "METRICS_ENABLED": False,
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "LOG_LEVEL": "WARNING",
            "CRON_SECRET": CRON_SECRET,
            "CREDENTIAL_ENCRYPTION_KEY": "test-credential-key-0123456789abcdef",
            "SOURCE_ROOT_DIR": str(source_root),
            "RETENTION_DAYS_DEFAULT": 30,
            "RECONCILE_BATCH_THRESHOLD": 100,
            "RECONCILE_BULK_UPDATE_POLICY": "overwrite",
            "PHONE_DEFAULT_COUNTRY_CODE": None,
            "MAX_UPLOAD_MB": 10,
            "SYNC_BATCH_SIZE": 1000,
            "SYNC_MAX_ATTEMPTS": 3,
            "SYNC_BACKOFF_BASE_SECONDS": 0.0,
            "META_ACCESS_TOKEN": None,
            "META_AD_ACCOUNT_ID": None,
            "CELERY_CONFIG": dict(EAGER_CELERY),
            "CELERY_SQLITE_PATH": str(tmp_path / "celery.sqlite"),
        }
    )

    # Drop collaborators cached by a previous test so config changes apply
    flask_app.extensions[EXTENSION_KEY] = {
        "celery_app": None,
        "platform_client": None,
        "source_fetcher": None,
        "vault": None,
    }

    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {CRON_SECRET}"}


@pytest.fixture
def source_root(app):
    return Path(app.config["SOURCE_ROOT_DIR"])


@pytest.fixture
def make_tenant():
    """Factory persisting a tenant; extra keyword arguments become columns."""

    counter = {"value": 0}

    def _make(name=None, **overrides):
        counter["value"] += 1
        name = name or f"Tenant {counter['value']}"
        values = {
            "name": name,
            "slug": overrides.pop("slug", None) or name.lower().replace(" ", "-"),
            "is_active": True,
            "audience_id": None,
        }
        values.update(overrides)
        tenant = Tenant(**values)
        db.session.add(tenant)
        db.session.commit()
        return tenant

    return _make


@pytest.fixture
def make_member():
    """Factory persisting an audience member for a tenant."""

    def _make(tenant, first_name="Jane", last_name="Doe", email=None, phone=None, remaining_days=30, **overrides):
        member = IdentityRecord(
            tenant_id=tenant.id,
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone=phone,
            status=IdentityStatus.ACTIVE if (email or phone) else IdentityStatus.NO_IDENTIFIER,
            remaining_days=remaining_days,
            **overrides,
        )
        db.session.add(member)
        db.session.commit()
        return member

    return _make


class FakeAudienceClient:
    """
    In-memory stand-in for the remote audience platform.

    ``failures`` is consumed one entry per add/remove call: an exception
    instance is raised, ``None`` lets the call succeed.
    """

    def __init__(self, failures=None, audience_id="aud-created-1"):
        self.failures = list(failures or [])
        self.audience_id = audience_id
        self.calls = []
        self.created = []

    def _maybe_fail(self):
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure

    def create_audience(self, name, description):
        self.created.append((name, description))
        return self.audience_id

    def add_users(self, audience_id, schema, rows):
        self.calls.append(("add", audience_id, list(schema), [list(row) for row in rows]))
        self._maybe_fail()
        return {"num_received": len(rows)}

    def remove_users(self, audience_id, schema, rows):
        self.calls.append(("remove", audience_id, list(schema), [list(row) for row in rows]))
        self._maybe_fail()
        return {"num_received": len(rows)}

    def get_audience_stats(self, audience_id):
        return AudienceStats(size=1234, status="200")

    @property
    def rows_sent(self):
        return sum(len(call[3]) for call in self.calls)


@pytest.fixture
def fake_platform(app):
    """Install a fake platform client so sync paths run without the network."""
    client = FakeAudienceClient()
    app.extensions[EXTENSION_KEY]["platform_client"] = client
    return client


@pytest.fixture
def rate_limited_error():
    return RemoteError("Too many calls", code=17, status_code=400)
