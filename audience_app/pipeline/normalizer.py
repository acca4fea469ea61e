"""CSV normalizer for tenant contact lists.

Detects name/email/phone columns from a flexible set of header synonyms,
streams rows, and normalizes identifiers so the matcher compares like with
like. Rows without any name are dropped; malformed emails and empty phones
are treated as absent rather than failing the file.
"""

from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass, field
from typing import Iterator, Sequence

from audience_app.errors import EmptyInputError, FormatError, SchemaError

from .metrics import record_rows_parsed

logger = logging.getLogger(__name__)

HEADER_SYNONYMS: dict[str, tuple[str, ...]] = {
    "first_name": ("first_name", "firstname", "first name", "fname", "first"),
    "last_name": ("last_name", "lastname", "last name", "lname", "last"),
    "email": ("email", "email_address", "e-mail", "emailaddress"),
    "phone": ("phone", "phone_number", "mobile", "cell", "telephone", "tel", "phonenumber"),
}

EMPTY_INPUT_MESSAGE = "CSV file is empty"
MISSING_NAME_COLUMNS_MESSAGE = (
    "Invalid CSV format: Could not find name columns. "
    'Expected headers like "first_name", "firstname", "last_name", "lastname"'
)

_EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_NON_DIGITS = re.compile(r"\D")
_MIN_LOCAL_PHONE_DIGITS = 7
_MAX_LOCAL_PHONE_DIGITS = 10


@dataclass(frozen=True)
class ContactRecord:
    """One normalized input row. Names may be blank but never both."""

    first_name: str
    last_name: str
    email: str | None = None
    phone: str | None = None

    @property
    def has_identifier(self) -> bool:
        return bool(self.email or self.phone)


@dataclass(frozen=True)
class HeaderMapping:
    """Source column names resolved for each logical field."""

    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None

    @property
    def has_name_column(self) -> bool:
        return bool(self.first_name or self.last_name)


@dataclass
class ContactParseStatistics:
    """Accumulated statistics from CSV parsing."""

    rows_read: int = 0
    rows_parsed: int = 0
    rows_skipped: int = 0
    invalid_emails: int = 0
    invalid_phones: int = 0
    unmapped_headers: list[str] = field(default_factory=list)


def normalize_email(value: object | None) -> str | None:
    """Lower-case and trim; returns ``None`` for blanks and malformed addresses."""

    if value is None:
        return None
    token = str(value).strip().lower()
    if not token or not _EMAIL_REGEX.match(token):
        return None
    return token


def normalize_phone(value: object | None, *, default_country_code: str | None = None) -> str | None:
    """
    Strip every non-digit character.

    When ``default_country_code`` is supplied, numbers shorter than seven
    digits are rejected and 7-10 digit local numbers get the code prepended;
    longer numbers are assumed to already carry a country code.
    """

    if value is None:
        return None
    digits = _NON_DIGITS.sub("", str(value))
    if not digits:
        return None
    if not default_country_code:
        return digits
    if len(digits) < _MIN_LOCAL_PHONE_DIGITS:
        return None
    if len(digits) <= _MAX_LOCAL_PHONE_DIGITS:
        return f"{_NON_DIGITS.sub('', default_country_code)}{digits}"
    return digits


def _sanitize_header(header: str | None) -> str:
    token = (header or "").strip()
    return token.lstrip("\ufeff").strip()


def detect_headers(headers: Sequence[str]) -> HeaderMapping:
    """Map each logical field to the first header matching one of its synonyms."""

    lowered = [_sanitize_header(header).lower() for header in headers]
    resolved: dict[str, str | None] = {}
    for field_name, synonyms in HEADER_SYNONYMS.items():
        resolved[field_name] = next(
            (headers[index] for index, header in enumerate(lowered) if header in synonyms),
            None,
        )
    return HeaderMapping(**resolved)


def _cell(row: dict[str | None, object], column: str | None) -> str:
    if column is None:
        return ""
    value = row.get(column)
    if value is None:
        return ""
    return str(value).strip()


class ContactCSVAdapter:
    """CSV reader producing :class:`ContactRecord` instances."""

    def __init__(self, text: str | None, *, default_country_code: str | None = None) -> None:
        self._text = text
        self.default_country_code = default_country_code
        self.statistics = ContactParseStatistics()
        self._header: HeaderMapping | None = None

    @property
    def header(self) -> HeaderMapping | None:
        return self._header

    def _prepare_reader(self) -> csv.DictReader:
        if not self._text or not self._text.strip():
            raise EmptyInputError(EMPTY_INPUT_MESSAGE)

        reader = csv.DictReader(io.StringIO(self._text.lstrip("\ufeff"), newline=""))
        try:
            raw_headers = reader.fieldnames
        except csv.Error as exc:
            raise FormatError(f"CSV parse error at line {reader.line_num}: {exc}") from exc
        if not raw_headers:
            raise EmptyInputError(EMPTY_INPUT_MESSAGE)

        reader.fieldnames = [_sanitize_header(header) for header in raw_headers]
        mapping = detect_headers(reader.fieldnames)
        if not mapping.has_name_column:
            raise SchemaError(MISSING_NAME_COLUMNS_MESSAGE)

        mapped = {mapping.first_name, mapping.last_name, mapping.email, mapping.phone}
        self.statistics.unmapped_headers = [header for header in reader.fieldnames if header not in mapped]
        self._header = mapping
        return reader

    def iter_records(self) -> Iterator[ContactRecord]:
        reader = self._prepare_reader()
        mapping = self._header
        assert mapping is not None
        try:
            for raw_row in reader:
                self.statistics.rows_read += 1
                record = self._build_record(raw_row, mapping)
                if record is None:
                    self.statistics.rows_skipped += 1
                    continue
                self.statistics.rows_parsed += 1
                yield record
        except csv.Error as exc:
            raise FormatError(f"CSV parse error at line {reader.line_num}: {exc}") from exc

    def _build_record(self, row: dict[str | None, object], mapping: HeaderMapping) -> ContactRecord | None:
        first_name = _cell(row, mapping.first_name)
        last_name = _cell(row, mapping.last_name)
        if not first_name and not last_name:
            return None

        email = None
        raw_email = _cell(row, mapping.email)
        if raw_email:
            email = normalize_email(raw_email)
            if email is None:
                self.statistics.invalid_emails += 1

        phone = None
        raw_phone = _cell(row, mapping.phone)
        if raw_phone:
            phone = normalize_phone(raw_phone, default_country_code=self.default_country_code)
            if phone is None:
                self.statistics.invalid_phones += 1

        return ContactRecord(first_name=first_name, last_name=last_name, email=email, phone=phone)

    def parse(self) -> list[ContactRecord]:
        records = list(self.iter_records())
        if self.statistics.rows_read == 0:
            raise EmptyInputError(EMPTY_INPUT_MESSAGE)

        stats = self.statistics
        logger.info(
            "Contact CSV parsed",
            extra={"event": "csv_parse_complete", "records_found": len(records), "status": "success"},
        )
        if stats.rows_skipped:
            logger.warning(
                "Contact CSV rows skipped without a name",
                extra={"event": "csv_rows_skipped", "records_found": stats.rows_skipped, "status": "warning"},
            )
        if stats.invalid_emails:
            logger.warning(
                "Contact CSV rows with invalid emails",
                extra={"event": "csv_invalid_emails", "records_found": stats.invalid_emails, "status": "warning"},
            )
        record_rows_parsed(
            parsed=stats.rows_parsed,
            skipped=stats.rows_skipped,
            invalid_emails=stats.invalid_emails,
            invalid_phones=stats.invalid_phones,
        )
        return records


def parse_contacts(text: str | None, *, default_country_code: str | None = None) -> list[ContactRecord]:
    """Parse raw CSV text into normalized contact records."""

    return ContactCSVAdapter(text, default_country_code=default_country_code).parse()


def validate_csv_format(text: str | None) -> tuple[bool, str | None]:
    """Cheap header check used before accepting an upload."""

    if not text or not text.strip():
        return False, EMPTY_INPUT_MESSAGE
    try:
        reader = csv.reader(io.StringIO(text.lstrip("\ufeff"), newline=""))
        headers = next(reader, None)
    except csv.Error as exc:
        return False, f"Parse error: {exc}"
    if not headers:
        return False, EMPTY_INPUT_MESSAGE
    if not detect_headers(headers).has_name_column:
        return False, "Could not find name columns (first_name, last_name, etc.)"
    return True, None
