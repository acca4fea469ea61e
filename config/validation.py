# config/validation.py

"""
Environment variable validation for the audience sync service.
Validates required environment variables at startup.
"""

import os
import sys
from typing import List, Tuple

_PLACEHOLDER_SECRETS = {"your-secret-key", "your_secret_key", "change-me"}


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: Flask environment (development, production, testing)
                  If None, reads from FLASK_ENV environment variable

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")

    errors = []

    # Only validate in production
    if flask_env != "production":
        return True, []

    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key in _PLACEHOLDER_SECRETS:
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not os.environ.get("DATABASE_URL"):
        errors.append("DATABASE_URL is required in production. Set it to your PostgreSQL connection string.")

    encryption_key = os.environ.get("CREDENTIAL_ENCRYPTION_KEY", "")
    if not encryption_key:
        errors.append("CREDENTIAL_ENCRYPTION_KEY is required to decrypt tenant remote-server credentials.")
    elif len(encryption_key.encode("utf-8")) < 32:
        errors.append("CREDENTIAL_ENCRYPTION_KEY must be at least 32 bytes; shorter keys are zero-padded.")

    if not os.environ.get("CRON_SECRET"):
        errors.append("CRON_SECRET is required so the HTTP trigger endpoints can authenticate callers.")

    # Remote audience sync is optional, but half a credential pair is a misconfiguration.
    has_token = bool(os.environ.get("META_ACCESS_TOKEN"))
    has_account = bool(os.environ.get("META_AD_ACCOUNT_ID"))
    if has_token != has_account:
        missing = "META_AD_ACCOUNT_ID" if has_token else "META_ACCESS_TOKEN"
        errors.append(f"{missing} is required when the other Meta credential is set.")
    elif not has_token and os.environ.get("META_SYNC_REQUIRED", "true").lower() == "true":
        errors.append(
            "META_ACCESS_TOKEN and META_AD_ACCOUNT_ID are required for audience sync. "
            "Set META_SYNC_REQUIRED=false to run without remote sync."
        )

    is_valid = len(errors) == 0
    return is_valid, errors


def validate_and_exit(flask_env: str = None) -> None:
    """
    Validate environment variables and exit with error if validation fails.
    Intended to be called at application startup.

    Args:
        flask_env: Flask environment (development, production, testing)
    """
    is_valid, errors = validate_environment(flask_env)

    if not is_valid:
        print("=" * 80, file=sys.stderr)
        print("ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        print("\nThe following environment variables are missing or invalid:\n", file=sys.stderr)

        for i, error in enumerate(errors, 1):
            print(f"{i}. {error}", file=sys.stderr)

        print("\n" + "=" * 80, file=sys.stderr)
        print("Please check your .env file or environment variables.", file=sys.stderr)
        print("See .env.example for required configuration.", file=sys.stderr)
        print("=" * 80, file=sys.stderr)

        sys.exit(1)
