from __future__ import annotations

import re

_RUC_RE = re.compile(r"\d{11}")


def document_base_name(ruc: str, document_type: str, series: str, number: str) -> str:
    """Build the SUNAT file base name, which doubles as the natural key.

    Format: RUC-TT-SSSS-NNNNNNNN
    Example: 20123456789-01-F001-123
    """
    if not _RUC_RE.fullmatch(ruc):
        raise ValueError(f"RUC must be 11 digits, got '{ruc}'")
    if len(document_type) != 2 or not document_type.isdigit():
        raise ValueError(f"Document type must be 2 digits, got '{document_type}'")
    if not series or not number:
        raise ValueError("Series and number are required")
    return f"{ruc}-{document_type}-{series}-{number}"


def cdr_entry_name(base_name: str) -> str:
    """Name SUNAT uses for the receipt XML inside the returned archive."""
    return f"R-{base_name}.XML"


def cdr_archive_name(base_name: str) -> str:
    return f"CDR-{base_name}.ZIP"
