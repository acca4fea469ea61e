import os
from types import SimpleNamespace

import pytest

from audience_app.errors import NoSourceFileError, SourceFetchError
from audience_app.sources import LocalDirectoryFetcher, fetch_for_tenant, resolve_credentials
from audience_app.vault import CredentialVault


def _tenant(**overrides):
    values = {
        "name": "Acme",
        "slug": "acme",
        "source_directory": None,
        "file_pattern": "*.csv",
        "remote_host": "sftp.acme.test",
        "remote_username": "acme",
        "remote_password_encrypted": None,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _write(path, content, mtime):
    path.write_text(content, encoding="utf-8")
    os.utime(path, (mtime, mtime))


def test_latest_matching_file_is_returned(tmp_path):
    tenant_dir = tmp_path / "acme"
    tenant_dir.mkdir()
    _write(tenant_dir / "old.csv", "first_name\nOld\n", 1_000)
    _write(tenant_dir / "new.CSV", "first_name\nNew\n", 2_000)
    _write(tenant_dir / "newest.txt", "ignored", 3_000)

    source = LocalDirectoryFetcher(tmp_path).fetch_latest(_tenant(), None)

    assert source.filename == "new.CSV"
    assert source.content == "first_name\nNew\n"


def test_source_directory_overrides_slug(tmp_path):
    drop = tmp_path / "drops" / "acme-prod"
    drop.mkdir(parents=True)
    _write(drop / "contacts.csv", "first_name\nAda\n", 1_000)

    source = LocalDirectoryFetcher(tmp_path).fetch_latest(_tenant(source_directory="drops/acme-prod"), None)

    assert source.filename == "contacts.csv"


def test_empty_directory_raises_no_source_file(tmp_path):
    (tmp_path / "acme").mkdir()

    with pytest.raises(NoSourceFileError, match="No CSV files found"):
        LocalDirectoryFetcher(tmp_path).fetch_latest(_tenant(), None)


def test_missing_directory_raises(tmp_path):
    with pytest.raises(SourceFetchError, match="Source directory not found"):
        LocalDirectoryFetcher(tmp_path).fetch_latest(_tenant(), None)


def test_directory_escaping_root_is_rejected(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    (tmp_path / "outside").mkdir()

    with pytest.raises(SourceFetchError, match="escapes"):
        LocalDirectoryFetcher(root).fetch_latest(_tenant(source_directory="../outside"), None)


def test_fetcher_requires_root_config():
    with pytest.raises(SourceFetchError, match="SOURCE_ROOT_DIR"):
        LocalDirectoryFetcher.from_config({})


def test_credentials_are_decrypted_with_vault():
    vault = CredentialVault("unit-test-key")
    tenant = _tenant(remote_password_encrypted=vault.encrypt("hunter2"))

    credentials = resolve_credentials(tenant, vault)

    assert credentials.password == "hunter2"
    assert credentials.host == "sftp.acme.test"


def test_undecryptable_credentials_fail_fetch(tmp_path):
    tenant = _tenant(remote_password_encrypted="00:11:22")

    with pytest.raises(SourceFetchError, match="Invalid client credentials"):
        fetch_for_tenant(tenant, LocalDirectoryFetcher(tmp_path), CredentialVault("unit-test-key"))


def test_encrypted_credentials_without_vault_fail():
    tenant = _tenant(remote_password_encrypted="aa:bb:cc")

    with pytest.raises(SourceFetchError, match="No credential vault"):
        resolve_credentials(tenant, None)
