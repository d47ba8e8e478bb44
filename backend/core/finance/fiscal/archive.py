"""Single-entry ZIP archives exchanged with the tax authority.

The authority only accepts documents as a base64 encoded ZIP holding exactly
one XML file, and answers with the acknowledgment (CDR) in the same format.
"""

from __future__ import annotations

import base64
import binascii
import io
import zipfile
from datetime import date

from finance.fiscal.models import FiscalDocument


class ArchiveError(RuntimeError):
    """Raised when an archive cannot be decoded or lacks the expected entry."""

    code = "ARCHIVE_ERROR"
    retryable = False


KIND_CODES = {
    FiscalDocument.Kind.INVOICE: "01",
    FiscalDocument.Kind.RECEIPT: "03",
    FiscalDocument.Kind.CREDIT_NOTE: "07",
    FiscalDocument.Kind.DEBIT_NOTE: "08",
    FiscalDocument.Kind.SUMMARY: "RC",
    FiscalDocument.Kind.VOIDED: "RA",
}


def document_kind_code(kind: str) -> str:
    try:
        return KIND_CODES[kind]
    except KeyError as exc:
        raise ValueError(f"Unknown fiscal document kind {kind!r}.") from exc


def _padded(number, width: int) -> str:
    value = str(number).strip()
    if not value.isdigit():
        raise ValueError(f"Document number must be numeric, got {number!r}.")
    return value.zfill(width)


def build_filename(tax_id: str, kind_code: str, series: str, number) -> str:
    """`{taxId}-{kindCode}-{series}-{8-digit number}.xml`"""

    return f"{tax_id}-{kind_code}-{series}-{_padded(number, 8)}.xml"


def build_batch_filename(tax_id: str, series: str, issue_date: date, number) -> str:
    """`{taxId}-{series}-{yyyyMMdd}-{5-digit number}`, where series is RC or RA."""

    return f"{tax_id}-{series}-{issue_date:%Y%m%d}-{_padded(number, 5)}"


def _stem(filename: str) -> str:
    for suffix in (".xml", ".zip", ".XML", ".ZIP"):
        if filename.endswith(suffix):
            return filename[: -len(suffix)]
    return filename


def entry_name(filename: str) -> str:
    return f"{_stem(filename)}.xml"


def archive_name(filename: str) -> str:
    return f"{_stem(filename)}.zip"


def build_zip(filename: str, content: str) -> str:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(entry_name(filename), content.encode("utf-8"))
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def extract_from_zip(archive_b64: str, filename: str | None = None) -> str:
    """Return the first entry of the archive, or the entry named `filename`."""

    if not archive_b64:
        raise ArchiveError("Archive payload is empty.")

    try:
        raw = base64.b64decode(archive_b64.strip(), validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ArchiveError("Archive payload is not valid base64.") from exc

    try:
        with zipfile.ZipFile(io.BytesIO(raw)) as archive:
            names = [name for name in archive.namelist() if not name.endswith("/")]
            if not names:
                raise ArchiveError("Archive has no entries.")

            if filename is None:
                target = names[0]
            else:
                candidates = {filename, entry_name(filename)}
                target = next((name for name in names if name in candidates), None)
                if target is None:
                    raise ArchiveError(f"Archive has no entry named {filename!r}.")

            data = archive.read(target)
    except zipfile.BadZipFile as exc:
        raise ArchiveError("Archive payload is not a valid ZIP file.") from exc

    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ArchiveError("Archive entry is not UTF-8 text.") from exc
