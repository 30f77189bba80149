from __future__ import annotations

import re
from datetime import date
from decimal import Decimal

from facturador.models.document import (
    DOC_BOLETA,
    DOC_FACTURA,
    DOC_NOTA_CREDITO,
    CanonicalDocument,
    Customer,
    Issuer,
    LineItem,
)
from facturador.services.exceptions import ValidationError
from facturador.services.tax_classifier import FREE_TRANSFER_CODE

TOLERANCE = Decimal("0.01")

_VALID_CUSTOMER_DOC_TYPES = frozenset({"1", "4", "6", "7"})
_VALID_DOCUMENT_TYPES = frozenset({DOC_FACTURA, DOC_BOLETA, DOC_NOTA_CREDITO})
_VALID_CURRENCIES = frozenset({"PEN", "USD", "EUR"})

_TAXED_CODES = frozenset(str(c) for c in range(10, 18))
_EXEMPT_CODES = frozenset({"20", "40"})
_UNAFFECTED_CODES = frozenset(str(c) for c in range(30, 38))


def validate_ruc(value: str) -> str:
    """Validate a RUC: exactly 11 numeric digits."""
    if not re.fullmatch(r"\d{11}", value):
        raise ValueError(f"RUC debe tener 11 digitos numericos: '{value}'")
    return value


def validate_date(value: str) -> str:
    """Validate an ISO date string (YYYY-MM-DD).

    Returns the value unchanged if valid.
    Raises ValueError for invalid dates.
    """
    try:
        date.fromisoformat(value)
    except ValueError:
        raise ValueError(f"Fecha invalida: '{value}'. Use YYYY-MM-DD.") from None
    return value


def validate_time(value: str) -> str:
    if not re.fullmatch(r"\d{2}:\d{2}:\d{2}", value):
        raise ValueError(f"Hora invalida: '{value}'. Use HH:MM:SS.")
    return value


def validate_series(value: str, document_type: str) -> str:
    """Validate the series format and its F/B prefix for the document type."""
    if not re.fullmatch(r"[A-Z][A-Z0-9]{3}", value):
        raise ValueError(f"La serie '{value}' debe tener formato valido (ej: F001, B001)")
    prefix = value[0]
    if document_type == DOC_FACTURA and prefix != "F":
        raise ValueError("Para facturas, la serie debe comenzar con 'F'")
    if document_type == DOC_BOLETA and prefix != "B":
        raise ValueError("Para boletas, la serie debe comenzar con 'B'")
    if document_type == DOC_NOTA_CREDITO and prefix not in ("F", "B"):
        raise ValueError("Para notas de credito, la serie debe comenzar con 'F' o 'B'")
    return value


def validate_number(value: str) -> str:
    if not re.fullmatch(r"\d{1,8}", value):
        raise ValueError(f"El numero debe tener entre 1 y 8 digitos: '{value}'")
    return value


def validate_currency(value: str) -> str:
    if value not in _VALID_CURRENCIES:
        raise ValueError(f"La moneda '{value}' no es valida (PEN, USD, EUR)")
    return value


def _validate_issuer(issuer: Issuer) -> None:
    if not issuer.ruc or not issuer.razon_social or not issuer.direccion:
        raise ValueError("Datos obligatorios del emisor incompletos")
    validate_ruc(issuer.ruc)


def _validate_customer(customer: Customer, document_type: str) -> None:
    if not customer.numero_doc or not customer.tipo_doc or not customer.razon_social:
        raise ValueError("Datos obligatorios del cliente incompletos")
    if customer.tipo_doc not in _VALID_CUSTOMER_DOC_TYPES:
        raise ValueError(f"Tipo de documento de cliente '{customer.tipo_doc}' no valido")
    if customer.tipo_doc == "1" and not re.fullmatch(r"\d{8}", customer.numero_doc):
        raise ValueError("El DNI debe tener 8 digitos numericos")
    if customer.tipo_doc == "6" and not re.fullmatch(r"\d{11}", customer.numero_doc):
        raise ValueError("El RUC del cliente debe tener 11 digitos numericos")
    if document_type == DOC_FACTURA and customer.tipo_doc != "6":
        raise ValueError("Las facturas (01) solo pueden emitirse a clientes con RUC (tipo 6)")
    if document_type == DOC_BOLETA and customer.tipo_doc == "6":
        raise ValueError("Las boletas (03) no deben emitirse a clientes con RUC (tipo 6)")


def _validate_item(item: LineItem, position: int) -> None:
    if not item.description:
        raise ValueError(f"El item {position} debe tener descripcion")
    if item.quantity <= 0:
        raise ValueError(f"El item {position} debe tener cantidad mayor a 0")
    if item.unit_value < 0:
        raise ValueError(f"El item {position} no puede tener valor unitario negativo")
    if item.affectation_code != FREE_TRANSFER_CODE:
        expected = item.unit_value * item.quantity
        if abs(item.line_total - expected) > TOLERANCE:
            raise ValueError(
                f"El item {position}: valor total inconsistente "
                f"(esperado: {expected:.2f}, actual: {item.line_total:.2f})"
            )


def _validate_totals(doc: CanonicalDocument) -> None:
    taxed = exempt = unaffected = tax = Decimal("0")
    for item in doc.items:
        code = item.affectation_code
        if code == FREE_TRANSFER_CODE:
            continue
        if code in _TAXED_CODES:
            taxed += item.line_total
        elif code in _EXEMPT_CODES:
            exempt += item.line_total
        elif code in _UNAFFECTED_CODES:
            unaffected += item.line_total
        tax += item.tax_amount

    totals = doc.totals
    if abs(totals.total_taxed - taxed) > TOLERANCE:
        raise ValueError(
            f"Total gravado inconsistente (esperado: {taxed:.2f}, actual: {totals.total_taxed:.2f})"
        )
    if abs(totals.total_tax - tax) > TOLERANCE:
        raise ValueError(
            f"Total IGV inconsistente (esperado: {tax:.2f}, actual: {totals.total_tax:.2f})"
        )
    expected_sale = taxed + exempt + unaffected + tax
    if abs(totals.total_sale - expected_sale) > TOLERANCE:
        raise ValueError(
            f"Total precio venta inconsistente "
            f"(esperado: {expected_sale:.2f}, actual: {totals.total_sale:.2f})"
        )
    if abs(totals.total_payable - totals.total_sale) > TOLERANCE:
        raise ValueError("Total importe a pagar debe ser igual al total precio venta")


def _check_required(doc: CanonicalDocument) -> None:
    required = {
        "serie": doc.series,
        "numero": doc.number,
        "fechaEmision": doc.issue_date,
        "horaEmision": doc.issue_time,
        "tipoDocumento": doc.document_type,
        "moneda": doc.currency,
        "formaPago": doc.payment_form,
    }
    missing = [name for name, value in required.items() if not value]
    if missing:
        raise ValueError(f"Faltan campos obligatorios: {', '.join(missing)}")

    free_only = any(i.affectation_code == FREE_TRANSFER_CODE for i in doc.items)
    t = doc.totals
    if not free_only:
        if t.total_taxed == 0 and t.total_tax == 0 and t.total_sale == 0:
            raise ValueError("Los totales no pueden estar todos en cero")
        if t.total_payable == 0:
            raise ValueError("totalImportePagar es obligatorio")


def validate_document(doc: CanonicalDocument) -> CanonicalDocument:
    """Run every input rule against *doc*, in order, stopping at the first failure.

    Returns the document unchanged. Raises ValidationError.
    """
    try:
        _check_required(doc)
        _validate_issuer(doc.issuer)
        _validate_customer(doc.customer, doc.document_type)
        if doc.document_type not in _VALID_DOCUMENT_TYPES:
            raise ValueError(f"Tipo de documento '{doc.document_type}' no valido")
        validate_series(doc.series, doc.document_type)
        validate_number(doc.number)
        validate_date(doc.issue_date)
        validate_time(doc.issue_time)
        if doc.due_date:
            validate_date(doc.due_date)
            if date.fromisoformat(doc.due_date) < date.fromisoformat(doc.issue_date):
                raise ValueError(
                    "La fecha de vencimiento no puede ser anterior a la fecha de emision"
                )
        validate_currency(doc.currency)
        if not doc.items:
            raise ValueError("El comprobante debe tener al menos un item")
        for position, item in enumerate(doc.items, start=1):
            _validate_item(item, position)
        _validate_totals(doc)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    return doc
