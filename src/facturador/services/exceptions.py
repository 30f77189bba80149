from __future__ import annotations


class FacturadorError(Exception):
    """Base for every pipeline failure.

    ``stage`` names the pipeline step that raised; ``code`` is a short
    machine-readable identifier.
    """

    stage = "pipeline"
    code = "ERROR"

    def __init__(self, description: str, *, code: str | None = None) -> None:
        super().__init__(description)
        self.description = description
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {
            "status": "error",
            "stage": self.stage,
            "code": self.code,
            "description": self.description,
        }


class ValidationError(FacturadorError):
    """Malformed or inconsistent input document. Recoverable by the caller."""

    stage = "validation"
    code = "VALIDATION"


class ClassificationError(FacturadorError):
    """One or more line items carry an affectation code outside catalog 07."""

    stage = "classification"
    code = "UNKNOWN_AFFECTATION"

    def __init__(self, description: str, unknown_codes: tuple[str, ...] = ()) -> None:
        super().__init__(description)
        self.unknown_codes = unknown_codes


class DocumentBuildError(FacturadorError):
    stage = "build"
    code = "BUILD"


class SignatureError(FacturadorError):
    """Missing extension slot, unsupported key or crypto failure. Not retryable."""

    stage = "signature"
    code = "SIGNATURE"


class TransmissionError(FacturadorError):
    """Network or HTTP failure talking to SUNAT.

    ``retryable`` is True only when the request never reached the server, so
    resending cannot register the document twice.
    """

    stage = "transmission"
    code = "TRANSMISSION"

    def __init__(self, description: str, *, retryable: bool = False) -> None:
        super().__init__(description)
        self.retryable = retryable


class ProtocolError(FacturadorError):
    """SUNAT answered with something that is neither a receipt nor a fault."""

    stage = "transmission"
    code = "PROTOCOL"


class ReceiptParseError(FacturadorError):
    stage = "receipt"
    code = "RECEIPT"


class DuplicateSubmissionError(FacturadorError):
    """The natural key was already sent and its outcome is not known locally."""

    stage = "ledger"
    code = "DUPLICATE"

    def __init__(self, description: str, document_key: str) -> None:
        super().__init__(description)
        self.document_key = document_key
