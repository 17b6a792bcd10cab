"""Spreadsheet parsing for contact import.

Everything here is pure: bytes in, ``ParsedFile`` out. Ownership and
persistence are assigned by :class:`app.crm.service.ContactImportService`.
"""

from __future__ import annotations

import base64
import binascii
import csv
import io
import re
import zipfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook.workbook import Workbook

from app.crm.models import CONTACT_STATUSES
from app.crm.schemas import ParsedContact


EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

COLUMN_SYNONYMS: dict[str, str] = {
    "name": "name",
    "full name": "name",
    "contact name": "name",
    "person": "name",
    "business name": "name",
    "email": "email",
    "email address": "email",
    "e-mail": "email",
    "phone": "phone",
    "phone number": "phone",
    "telephone": "phone",
    "mobile": "phone",
    "company": "company",
    "company name": "company",
    "organization": "company",
    "org": "company",
    "business": "company",
    "location": "location",
    "address": "location",
    "city": "location",
    "category": "category",
    "type": "category",
    "business size": "category",
    "size": "category",
    "status": "status",
    "notes": "notes",
    "note": "notes",
    "comments": "notes",
    "description": "notes",
    "website": "website",
    "url": "website",
    "web": "website",
    "contact person": "contact_person",
    "contact": "contact_person",
}

OPTIONAL_FIELDS = ("email", "phone", "company", "location", "category", "notes", "website", "contact_person")


class ContactImportError(Exception):
    """Raised when a file cannot be read at all."""


@dataclass
class RowValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    contact: ParsedContact | None = None


@dataclass
class ParsedFile:
    contacts: list[ParsedContact] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def add(self, result: RowValidationResult) -> None:
        if result.valid and result.contact is not None:
            self.contacts.append(result.contact)
        else:
            self.errors.extend(result.errors)


def normalize_column_name(header: str) -> str | None:
    return COLUMN_SYNONYMS.get(header.strip().lower())


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def validate_contact_row(row: Mapping[str, Any], row_number: int) -> RowValidationResult:
    """Check one header-normalized row; ``row_number`` is 1-based."""
    errors: list[str] = []

    name = _clean(row.get("name"))
    if name is None:
        errors.append(f"Row {row_number}: Name is required")

    raw_email = row.get("email")
    email = _clean(raw_email)
    if email is not None and not EMAIL_PATTERN.match(email):
        errors.append(f"Row {row_number}: Invalid email format: {raw_email}")

    raw_status = row.get("status")
    status = _clean(raw_status)
    if status is not None:
        status = status.lower()
        if status not in CONTACT_STATUSES:
            errors.append(
                f'Row {row_number}: Invalid status "{raw_status}". Must be one of: {", ".join(CONTACT_STATUSES)}'
            )

    if errors:
        return RowValidationResult(valid=False, errors=errors)

    values = {field_name: _clean(row.get(field_name)) for field_name in OPTIONAL_FIELDS}
    contact = ParsedContact(name=name, status=status or "prospect", **values)
    return RowValidationResult(valid=True, contact=contact)


def decode_base64_content(content: str) -> bytes:
    try:
        # MIME encoders wrap lines every 76 characters.
        return base64.b64decode("".join(content.split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ContactImportError(f"invalid base64 content ({exc})") from exc


def _is_blank(cells: Iterable[Any]) -> bool:
    return all(_clean(cell) is None for cell in cells)


def _field_count_error(expected: int, parsed: int) -> str:
    qualifier = "Too many" if parsed > expected else "Too few"
    return f"CSV Parse Error: {qualifier} fields: expected {expected} fields but parsed {parsed}"


def parse_csv(content: bytes) -> ParsedFile:
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ContactImportError(f"CSV file is not valid UTF-8 ({exc.reason})") from exc

    parsed = ParsedFile()
    reader = csv.reader(io.StringIO(text, newline=""), strict=True)
    try:
        header = next(reader, None)
    except csv.Error as exc:
        parsed.errors.append(f"CSV Parse Error: {exc}")
        return parsed
    if header is None:
        return parsed

    columns = [normalize_column_name(cell) or cell for cell in header]
    row_number = 0
    while True:
        try:
            cells = next(reader)
        except StopIteration:
            break
        except csv.Error as exc:
            parsed.errors.append(f"CSV Parse Error: {exc}")
            break

        if _is_blank(cells):
            continue
        row_number += 1
        if len(cells) != len(columns):
            parsed.errors.append(_field_count_error(len(columns), len(cells)))
        parsed.add(validate_contact_row(dict(zip(columns, cells)), row_number))

    return parsed


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return str(value)


def parse_workbook(workbook: Workbook) -> ParsedFile:
    parsed = ParsedFile()
    if not workbook.sheetnames:
        parsed.errors.append("Excel file has no sheets")
        return parsed

    sheet = workbook[workbook.sheetnames[0]]
    rows = sheet.iter_rows(values_only=True)
    header = next(rows, None)
    if header is None:
        return parsed

    columns = [normalize_column_name(_cell_text(cell)) for cell in header]
    row_number = 0
    for values in rows:
        if _is_blank(values):
            continue
        row_number += 1
        record: dict[str, str] = {}
        for index, column in enumerate(columns):
            if column is None:
                continue
            record[column] = _cell_text(values[index]) if index < len(values) else ""
        parsed.add(validate_contact_row(record, row_number))

    return parsed


# Sheets load lazily in read-only mode, so a damaged part only surfaces while
# rows are read. XML parsers raise SyntaxError subclasses.
WORKBOOK_READ_ERRORS = (
    zipfile.BadZipFile,
    InvalidFileException,
    KeyError,
    OSError,
    SyntaxError,
    ValueError,
    TypeError,
)


def parse_excel(content: bytes) -> ParsedFile:
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except WORKBOOK_READ_ERRORS as exc:
        raise ContactImportError(f"unreadable Excel workbook ({exc})") from exc
    try:
        return parse_workbook(workbook)
    except WORKBOOK_READ_ERRORS as exc:
        raise ContactImportError(f"unreadable Excel workbook ({exc})") from exc
    finally:
        workbook.close()


FILE_PARSERS = {
    "csv": parse_csv,
    "xlsx": parse_excel,
    "xls": parse_excel,
}


def parse_file(content: bytes, file_kind: str) -> ParsedFile:
    parser = FILE_PARSERS.get(file_kind)
    if parser is None:
        raise ContactImportError(f"unsupported file kind {file_kind!r}")
    return parser(content)
