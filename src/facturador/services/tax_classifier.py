"""IGV classification of line items (SUNAT catalog 07).

Groups items by affectation code, totals each group and derives the
document-level tax and line-extension amounts. Also computes the optional
perception surcharge for facturas.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from facturador.models.document import DOC_FACTURA, LineItem
from facturador.services.exceptions import ClassificationError
from facturador.utils.formatters import round_money

FREE_TRANSFER_CODE = "21"


@dataclass(frozen=True)
class TaxCategory:
    category_id: str  # UN/ECE 5305
    scheme_id: str  # catalog 05
    name: str
    type_code: str
    rate: Decimal  # percent


IGV = TaxCategory("S", "1000", "IGV", "VAT", Decimal("18.00"))
EXONERADO = TaxCategory("E", "9997", "EXO", "VAT", Decimal("0.00"))
GRATUITO = TaxCategory("Z", "9996", "GRA", "FRE", Decimal("0.00"))
INAFECTO = TaxCategory("O", "9998", "INA", "INA", Decimal("0.00"))
EXPORTACION = TaxCategory("G", "9995", "EXP", "FRE", Decimal("0.00"))

CATALOG: dict[str, TaxCategory] = {
    **{str(code): IGV for code in range(10, 18)},
    "20": EXONERADO,
    FREE_TRANSFER_CODE: GRATUITO,
    **{str(code): INAFECTO for code in range(30, 38)},
    "40": EXPORTACION,
}

PERCEPTION_RATES: dict[str, Decimal] = {
    "01": Decimal("2.00"),
    "02": Decimal("1.00"),
    "03": Decimal("0.50"),
}


@dataclass(frozen=True)
class Classified:
    code: str
    category: TaxCategory


@dataclass(frozen=True)
class UnknownCode:
    code: str


def lookup_category(code: str) -> Classified | UnknownCode:
    """Map an affectation code to its tax category without deciding what to do on a miss."""
    category = CATALOG.get(code)
    if category is None:
        return UnknownCode(code)
    return Classified(code, category)


@dataclass(frozen=True)
class TaxBucket:
    code: str
    category: TaxCategory
    taxable_base: Decimal
    tax_amount: Decimal

    @property
    def rate(self) -> Decimal:
        return self.category.rate


@dataclass(frozen=True)
class TaxSummary:
    buckets: tuple[TaxBucket, ...]
    total_tax: Decimal
    line_extension_total: Decimal

    @property
    def tax_inclusive_total(self) -> Decimal:
        return round_money(self.line_extension_total + self.total_tax)

    def bucket(self, code: str) -> TaxBucket | None:
        return next((b for b in self.buckets if b.code == code), None)


@dataclass(frozen=True)
class Perception:
    system_code: str
    percent: Decimal
    base_amount: Decimal
    amount: Decimal
    net_total: Decimal


def classify(items: Iterable[LineItem]) -> TaxSummary:
    """Aggregate items into one bucket per affectation code.

    Raises ClassificationError if any item carries a code outside catalog 07.
    Buckets are ordered by code so the result does not depend on item order.
    """
    bases: dict[str, Decimal] = {}
    taxes: dict[str, Decimal] = {}
    categories: dict[str, TaxCategory] = {}
    unknown: list[tuple[int, str]] = []

    for idx, item in enumerate(items, start=1):
        result = lookup_category(item.affectation_code)
        if isinstance(result, UnknownCode):
            unknown.append((idx, result.code))
            continue
        categories[result.code] = result.category
        bases[result.code] = bases.get(result.code, Decimal("0")) + item.line_total
        taxes[result.code] = taxes.get(result.code, Decimal("0")) + item.tax_amount

    if unknown:
        detail = ", ".join(f"item {idx}: '{code}'" for idx, code in unknown)
        raise ClassificationError(
            f"Tipo de afectacion IGV desconocido: {detail}",
            unknown_codes=tuple(code for _, code in unknown),
        )

    buckets = tuple(
        TaxBucket(
            code=code,
            category=categories[code],
            taxable_base=round_money(bases[code]),
            tax_amount=round_money(taxes[code]),
        )
        for code in sorted(categories)
    )
    total_tax = round_money(sum((b.tax_amount for b in buckets), Decimal("0")))
    line_extension = round_money(
        sum((b.taxable_base for b in buckets if b.code != FREE_TRANSFER_CODE), Decimal("0"))
    )
    return TaxSummary(buckets=buckets, total_tax=total_tax, line_extension_total=line_extension)


def compute_perception(
    document_type: str,
    indicator: str | None,
    payable: Decimal,
) -> Perception | None:
    """Return the perception surcharge for a factura, or None when it does not apply.

    A missing or unsupported indicator is not an error.
    """
    if document_type != DOC_FACTURA or not indicator:
        return None
    percent = PERCEPTION_RATES.get(indicator)
    if percent is None:
        return None
    amount = round_money(payable * percent / Decimal("100"))
    return Perception(
        system_code=indicator,
        percent=percent,
        base_amount=payable,
        amount=amount,
        net_total=round_money(payable + amount),
    )
