from __future__ import annotations

import logging
from enum import Enum

from lxml import etree

from facturador.models.receipt import ReceiptRecord, ReceiptStatus
from facturador.services.exceptions import ReceiptParseError
from facturador.services.ubl_builder import CAC_NS, CBC_NS

logger = logging.getLogger(__name__)

_RESPONSE_PATH = f"{{{CAC_NS}}}DocumentResponse/{{{CAC_NS}}}Response"

OBSERVED_RANGE = (4000, 5000)


class CodeComparison(Enum):
    """How ResponseCode is compared against the observation range.

    NUMERIC parses the code as an integer. LEXICAL compares strings, which
    is what older integrations did: "40000" or "4" + letters fall in range.
    """

    NUMERIC = "numeric"
    LEXICAL = "lexical"


def derive_status(code: str, mode: CodeComparison = CodeComparison.NUMERIC) -> ReceiptStatus:
    if code == "0":
        return ReceiptStatus.APPROVED
    low, high = OBSERVED_RANGE
    if mode is CodeComparison.LEXICAL:
        if str(low) <= code < str(high):
            return ReceiptStatus.OBSERVED
        return ReceiptStatus.REJECTED
    try:
        value = int(code)
    except ValueError:
        return ReceiptStatus.REJECTED
    if low <= value < high:
        return ReceiptStatus.OBSERVED
    return ReceiptStatus.REJECTED


def interpret(receipt_xml: bytes, mode: CodeComparison = CodeComparison.NUMERIC) -> ReceiptRecord:
    """Read ResponseCode and Description from a CDR ApplicationResponse."""
    try:
        root = etree.fromstring(receipt_xml)
    except etree.XMLSyntaxError as exc:
        raise ReceiptParseError(f"CDR no es XML valido: {exc}") from exc

    response = root.find(_RESPONSE_PATH)
    if response is None:
        raise ReceiptParseError("CDR sin cac:DocumentResponse/cac:Response")

    code = response.findtext(f"{{{CBC_NS}}}ResponseCode")
    if code is None or not code.strip():
        raise ReceiptParseError("CDR sin cbc:ResponseCode")
    code = code.strip()
    description = (response.findtext(f"{{{CBC_NS}}}Description") or "").strip()

    status = derive_status(code, mode)
    logger.info("CDR %s: %s (%s)", code, status.value, description)
    return ReceiptRecord(response_code=code, description=description, status=status)
