from __future__ import annotations

import base64
from dataclasses import dataclass
from enum import Enum


class ReceiptStatus(str, Enum):
    APPROVED = "approved"
    OBSERVED = "observed"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass(frozen=True)
class ReceiptRecord:
    """Outcome of one completed transmission (CDR or SOAP fault)."""

    response_code: str
    description: str
    status: ReceiptStatus
    container: bytes = b""
    container_path: str = ""


@dataclass(frozen=True)
class SubmissionResult:
    """What a caller gets back from a finished submission."""

    document_key: str
    status: ReceiptStatus
    code: str
    description: str
    signed_xml: bytes
    cdr_zip: bytes
    digest_value: str
    signature_value: str
    cdr_path: str = ""

    def to_dict(self) -> dict:
        return {
            "document_key": self.document_key,
            "status": self.status.value,
            "code": self.code,
            "description": self.description,
            "hash": f"SHA256:{self.digest_value}|RSA:{self.signature_value}",
            "digest_value": self.digest_value,
            "signature_value": self.signature_value,
            "xml_signed": base64.b64encode(self.signed_xml).decode("ascii"),
            "cdr_zip": base64.b64encode(self.cdr_zip).decode("ascii"),
            "cdr_path": self.cdr_path,
        }

    @classmethod
    def from_dict(cls, d: dict) -> SubmissionResult:
        return cls(
            document_key=d["document_key"],
            status=ReceiptStatus(d["status"]),
            code=d["code"],
            description=d["description"],
            signed_xml=base64.b64decode(d.get("xml_signed", "")),
            cdr_zip=base64.b64decode(d.get("cdr_zip", "")),
            digest_value=d.get("digest_value", ""),
            signature_value=d.get("signature_value", ""),
            cdr_path=d.get("cdr_path", ""),
        )
