import json
import logging

from flask import Flask

from audience_app.utils.logging_config import JSONFormatter, SensitiveFieldFilter, TextFormatter, setup_logging


def _record(**extra):
    record = logging.LogRecord("audience_app.test", logging.INFO, __file__, 10, "Sync started", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_sensitive_extra_fields_are_dropped():
    record = _record(event="meta_upload_start", access_token="abc", password="pw", tenant="Acme")

    assert SensitiveFieldFilter().filter(record) is True

    assert not hasattr(record, "access_token")
    assert not hasattr(record, "password")
    assert record.tenant == "Acme"


def test_json_formatter_includes_extras():
    record = _record(event="cron_start", records_found=3)

    payload = json.loads(JSONFormatter("audience-sync").format(record))

    assert payload["msg"] == "Sync started"
    assert payload["level"] == "INFO"
    assert payload["app"] == "audience-sync"
    assert payload["event"] == "cron_start"
    assert payload["records_found"] == 3


def test_text_formatter_appends_key_values():
    line = TextFormatter().format(_record(tenant="Acme", event="cron_client_start"))

    assert line.endswith("| event=cron_client_start tenant=Acme")


def test_setup_logging_writes_filtered_json_file(tmp_path):
    app = Flask("logging-test")
    app.config.update(
        LOG_LEVEL="INFO",
        LOG_FORMAT="json",
        LOG_DIR=str(tmp_path),
        ENABLE_FILE_LOGGING=True,
        ENABLE_CONSOLE_LOGGING=False,
        APP_NAME="audience-sync",
    )

    setup_logging(app)
    app.logger.info("Credential check", extra={"event": "credential_check", "api_key": "should-not-leak"})
    for handler in app.logger.handlers:
        handler.flush()

    lines = (tmp_path / "audience_pipeline.log").read_text(encoding="utf-8").splitlines()
    entries = [json.loads(line) for line in lines if '"credential_check"' in line]
    assert entries and "api_key" not in entries[0]
    assert "should-not-leak" not in "\n".join(lines)

    # A second call replaces handlers instead of stacking them
    setup_logging(app)
    marked = [handler for handler in app.logger.handlers if getattr(handler, "_audience_handler", False)]
    assert len(marked) == 1
    for handler in marked:
        handler.close()
        app.logger.removeHandler(handler)
    package_logger = logging.getLogger("audience_app")
    for handler in list(package_logger.handlers):
        if getattr(handler, "_audience_handler", False):
            handler.close()
            package_logger.removeHandler(handler)
    package_logger.setLevel(logging.WARNING)
