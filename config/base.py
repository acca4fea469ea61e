# config/base.py
import os


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=None):
    """Parse an integer env value, falling back to ``default`` when malformed."""
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        return default
    return number


def _coerce_float(value, default):
    if value is None or str(value).strip() == "":
        return default
    try:
        return float(str(value).strip())
    except ValueError:
        return default


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY environment variable before deploying.",
            UserWarning,
            stacklevel=2,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Retention lifecycle
    RETENTION_DAYS_DEFAULT = _coerce_int(os.environ.get("RETENTION_DAYS_DEFAULT"), 30, minimum=1)

    # Reconciliation
    RECONCILE_BATCH_THRESHOLD = _coerce_int(os.environ.get("RECONCILE_BATCH_THRESHOLD"), 100, minimum=1)
    RECONCILE_UPDATE_CHUNK_SIZE = _coerce_int(os.environ.get("RECONCILE_UPDATE_CHUNK_SIZE"), 100, minimum=1)
    RECONCILE_BULK_UPDATE_POLICY = (os.environ.get("RECONCILE_BULK_UPDATE_POLICY") or "overwrite").strip().lower()
    PHONE_DEFAULT_COUNTRY_CODE = (os.environ.get("PHONE_DEFAULT_COUNTRY_CODE") or "").strip() or None

    # Audience platform sync
    SYNC_BATCH_SIZE = _coerce_int(os.environ.get("SYNC_BATCH_SIZE"), 1000, minimum=1)
    SYNC_MAX_ATTEMPTS = _coerce_int(os.environ.get("SYNC_MAX_ATTEMPTS"), 3, minimum=1)
    SYNC_BACKOFF_BASE_SECONDS = _coerce_float(os.environ.get("SYNC_BACKOFF_BASE_SECONDS"), 1.0)

    META_ACCESS_TOKEN = os.environ.get("META_ACCESS_TOKEN")
    META_AD_ACCOUNT_ID = os.environ.get("META_AD_ACCOUNT_ID")
    META_API_VERSION = os.environ.get("META_API_VERSION", "v19.0")
    META_GRAPH_URL = os.environ.get("META_GRAPH_URL", "https://graph.facebook.com")
    META_REQUEST_TIMEOUT = _coerce_int(os.environ.get("META_REQUEST_TIMEOUT"), 30, minimum=1)

    # Tenant source files and credentials
    CREDENTIAL_ENCRYPTION_KEY = os.environ.get("CREDENTIAL_ENCRYPTION_KEY")
    SOURCE_ROOT_DIR = os.environ.get("SOURCE_ROOT_DIR")

    # HTTP triggers
    CRON_SECRET = os.environ.get("CRON_SECRET")
    MAX_UPLOAD_MB = _coerce_int(os.environ.get("MAX_UPLOAD_MB"), 10, minimum=1)
    MAX_CONTENT_LENGTH = MAX_UPLOAD_MB * 1024 * 1024

    # Worker
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    PIPELINE_DAILY_HOUR_UTC = _coerce_int(os.environ.get("PIPELINE_DAILY_HOUR_UTC"), 6, minimum=0)
    PIPELINE_TASK_TIME_LIMIT = _coerce_int(os.environ.get("PIPELINE_TASK_TIME_LIMIT"), 60 * 60, minimum=60)
    PIPELINE_BEAT_ENABLED = _coerce_bool(os.environ.get("PIPELINE_BEAT_ENABLED"), default=True)

    METRICS_ENABLED = _coerce_bool(os.environ.get("METRICS_ENABLED"), default=True)


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URIs need forward slashes even on Windows
    db_path = os.path.join(instance_path, "audience_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    CREDENTIAL_ENCRYPTION_KEY = "test-credential-key-0123456789abcdef"
    CRON_SECRET = "test-cron-secret"
    SYNC_BACKOFF_BASE_SECONDS = 0.0
    PIPELINE_BEAT_ENABLED = False
    METRICS_ENABLED = False


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
