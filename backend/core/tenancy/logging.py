from __future__ import annotations

import logging
import re
from typing import Any


# RUC: 11 digits starting with 10, 15, 17 or 20. DNI: 8 digits.
_RUC_RE = re.compile(r"(?<![\dA-Za-z])(?:10|15|17|20)\d{9}(?!\d)")
_DNI_RE = re.compile(r"(?<![\dA-Za-z-])\d{8}(?![\d-])")


def mask_tax_ids(text: str) -> str:
    """Mask taxpayer (RUC) and personal (DNI) identifiers in a string.

    No digits are kept, so partially masked ids cannot be correlated in logs.
    Zero-padded document numbers inside filenames (``F001-00000001``) are
    left alone because they are preceded by a dash.
    """

    if not text:
        return text

    text = _RUC_RE.sub("***RUC***", text)
    text = _DNI_RE.sub("***DNI***", text)
    return text


class MaskTaxIdFilter(logging.Filter):
    """Logging filter to mask RUC/DNI values in log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except Exception:  # pragma: no cover
            message = str(getattr(record, "msg", ""))

        record.msg = mask_tax_ids(str(message))
        record.args = ()

        for key in ("ruc", "dni", "tax_id"):
            if hasattr(record, key):
                value: Any = getattr(record, key)
                if isinstance(value, str):
                    setattr(record, key, mask_tax_ids(value))

        return True
