from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path

from facturador.config import Settings, load_issuer, load_yaml
from facturador.models.document import CanonicalDocument
from facturador.models.receipt import ReceiptRecord, ReceiptStatus, SubmissionResult
from facturador.services.cdr_reader import CodeComparison, interpret
from facturador.services.exceptions import (
    DuplicateSubmissionError,
    ReceiptParseError,
    SignatureError,
    TransmissionError,
    ValidationError,
)
from facturador.services.http_retry import SUNAT_SEND
from facturador.services.packaging import Archive, read_single_entry, zip_document
from facturador.services.sunat_client import build_envelope, send_bill
from facturador.services.tax_classifier import (
    Perception,
    TaxSummary,
    classify,
    compute_perception,
)
from facturador.services.ubl_builder import serialize
from facturador.services.xml_signer import SignedArtifact, sign_document, verify_document
from facturador.utils import ledger
from facturador.utils.certificate import load_pfx
from facturador.utils.naming import cdr_archive_name, cdr_entry_name
from facturador.utils.validators import TOLERANCE, validate_document

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedDocument:
    """Signed document ready for dry-run saving or submission."""

    document: CanonicalDocument
    summary: TaxSummary
    perception: Perception | None
    signed: SignedArtifact

    @property
    def key(self) -> str:
        return self.signed.base_name


def load_document(path: Path) -> CanonicalDocument:
    """Read a document request from YAML/JSON.

    When the file has no ``emisor`` block the issuer profile from the config
    directory is used.
    """
    data = load_yaml(path)
    if not isinstance(data, dict):
        raise ValidationError(f"El archivo no contiene un comprobante: {path}")
    if not data.get("emisor"):
        issuer = load_issuer()
        if issuer is None:
            raise ValidationError("Falta 'emisor' y no existe config/issuer.yaml")
        data = {**data, "emisor": issuer}
    try:
        return CanonicalDocument.from_dict(data)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def prepare(document: CanonicalDocument, settings: Settings) -> PreparedDocument:
    """Classify, validate, build, sign and self-verify the document.

    Classification runs first so an unknown affectation code is reported as
    such and not as a totals mismatch.
    """
    summary = classify(document.items)
    validate_document(document)
    if abs(summary.tax_inclusive_total - document.totals.total_sale) > TOLERANCE:
        raise ValidationError(
            f"Total precio venta no cuadra con los tributos clasificados "
            f"(esperado: {summary.tax_inclusive_total:.2f}, actual: {document.totals.total_sale:.2f})"
        )
    perception = compute_perception(
        document.document_type, document.perception_type, document.totals.total_payable
    )
    unsigned = serialize(document, summary)

    try:
        material = load_pfx(settings.cert_path, settings.cert_password)
    except (OSError, ValueError) as exc:
        raise SignatureError(f"No se pudo leer el certificado: {exc}") from exc

    signed = sign_document(unsigned, material.key_pem, material.cert_pem)
    verify_document(signed, material.cert_pem)
    logger.info("Prepared %s", signed.base_name)
    return PreparedDocument(document=document, summary=summary, perception=perception, signed=signed)


def _write(path: Path, content: bytes) -> str:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return str(path)


def _save_outgoing(prepared: PreparedDocument, archive: Archive, settings: Settings) -> None:
    try:
        _write(settings.out_dir / f"{prepared.key}.xml", prepared.signed.xml)
        _write(settings.out_dir / archive.name, archive.content)
    except OSError:
        logger.warning("Failed to save outgoing artifacts for %s", prepared.key, exc_info=True)


def _save_receipt(key: str, cdr_zip: bytes, entry_name: str, receipt_xml: bytes, settings: Settings) -> str:
    """Store CDR-<base>.ZIP and the extracted receipt XML under cdr/<base>/.

    Returns the archive path, or "" if it could not be written.
    """
    folder = settings.cdr_dir / key
    try:
        zip_path = _write(folder / cdr_archive_name(key), cdr_zip)
        _write(folder / entry_name, receipt_xml)
    except OSError:
        logger.warning("Failed to save CDR for %s", key, exc_info=True)
        return ""
    return zip_path


def _result(prepared: PreparedDocument, record: ReceiptRecord) -> SubmissionResult:
    return SubmissionResult(
        document_key=prepared.key,
        status=record.status,
        code=record.response_code,
        description=record.description,
        signed_xml=prepared.signed.xml,
        cdr_zip=record.container,
        digest_value=prepared.signed.digest_value,
        signature_value=prepared.signed.signature_value,
        cdr_path=record.container_path,
    )


def submit(
    prepared: PreparedDocument,
    settings: Settings,
    mode: CodeComparison = CodeComparison.NUMERIC,
) -> SubmissionResult:
    """Zip, send and interpret the answer for a prepared document.

    Submissions of the same key are serialized. An acknowledged key returns
    its stored result without contacting SUNAT; a key whose previous send has
    no known outcome raises DuplicateSubmissionError.
    """
    key = prepared.key
    with ledger.submission_lock(key, settings.ledger_dir):
        state = ledger.get_state(key, settings.ledger_dir)
        if state == ledger.ACKNOWLEDGED:
            stored = ledger.get_result(key, settings.ledger_dir)
            if stored is None:
                raise DuplicateSubmissionError(
                    f"{key} figura como aceptado pero sin resultado guardado; "
                    "verifique en SUNAT antes de reenviar",
                    document_key=key,
                )
            logger.info("%s already acknowledged, returning stored result", key)
            return stored
        if state == ledger.SENT:
            raise DuplicateSubmissionError(
                f"{key} ya fue enviado y su resultado es desconocido; "
                "verifique en SUNAT antes de reenviar",
                document_key=key,
            )

        archive = zip_document(key, prepared.signed.xml)
        envelope = build_envelope(
            prepared.document.issuer.ruc, settings.sol_user, settings.sol_password, archive
        )
        _save_outgoing(prepared, archive, settings)

        ledger.mark_sent(key, settings.ledger_dir)
        try:
            response = send_bill(
                envelope,
                settings.endpoint,
                settings.timeout,
                policy=SUNAT_SEND.with_attempts(settings.max_attempts),
            )
        except TransmissionError as exc:
            if exc.retryable:
                ledger.clear_entry(key, settings.ledger_dir)
            raise

        if response.is_fault:
            # SUNAT answered but did not register the document
            ledger.clear_entry(key, settings.ledger_dir)
            logger.warning("SUNAT fault for %s: %s %s", key, response.fault_code, response.fault_string)
            return _result(
                prepared,
                ReceiptRecord(
                    response_code=response.fault_code,
                    description=response.fault_string,
                    status=ReceiptStatus.ERROR,
                ),
            )

        try:
            entry_name, receipt_xml = read_single_entry(response.cdr_zip)
        except ValueError as exc:
            raise ReceiptParseError(f"CDR ilegible: {exc}") from exc
        if entry_name != cdr_entry_name(key):
            logger.warning("Unexpected CDR entry %s for %s", entry_name, key)

        record = interpret(receipt_xml, mode)
        cdr_path = _save_receipt(key, response.cdr_zip, entry_name, receipt_xml, settings)
        record = replace(record, container=response.cdr_zip, container_path=cdr_path)

        result = _result(prepared, record)
        ledger.mark_acknowledged(result, settings.ledger_dir)
        return result


def emit(
    document: CanonicalDocument,
    settings: Settings,
    mode: CodeComparison = CodeComparison.NUMERIC,
) -> SubmissionResult:
    """Run the whole pipeline for one document."""
    return submit(prepare(document, settings), settings, mode)


def save_xml(prepared: PreparedDocument, settings: Settings) -> str:
    """Save the signed XML to disk without submitting."""
    return _write(settings.out_dir / f"{prepared.key}.xml", prepared.signed.xml)
