from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

DOC_FACTURA = "01"
DOC_BOLETA = "03"
DOC_NOTA_CREDITO = "07"
DOC_NOTA_DEBITO = "08"

BUILDABLE_TYPES = frozenset({DOC_FACTURA, DOC_BOLETA})


def _dec(value: object, field_name: str) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        d = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{field_name}: valor numerico invalido '{value}'") from None
    if not d.is_finite():
        raise ValueError(f"{field_name}: valor numerico invalido '{value}'")
    return d


def _str(value: object) -> str:
    return "" if value is None else str(value)


def _mapping(value: object, field_name: str) -> dict:
    if value is None or value == "":
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{field_name}: se esperaba un objeto, no '{value}'")
    return value


def _entries(value: object, field_name: str) -> list[dict]:
    if value is None or value == "":
        return []
    if not isinstance(value, list):
        raise ValueError(f"{field_name}: se esperaba una lista")
    return [_mapping(v, f"{field_name}[{i}]") for i, v in enumerate(value)]


@dataclass(frozen=True)
class Issuer:
    """Emisor: the company issuing the document."""

    ruc: str
    razon_social: str
    direccion: str
    nombre_comercial: str = ""
    ubigeo: str = ""
    departamento: str = ""
    provincia: str = ""
    distrito: str = ""
    codigo_pais: str = "PE"
    correo: str = ""

    @classmethod
    def from_dict(cls, d: dict) -> Issuer:
        return cls(
            ruc=_str(d.get("ruc")),
            razon_social=_str(d.get("razonSocial")),
            direccion=_str(d.get("direccion")),
            nombre_comercial=_str(d.get("nombreComercial")),
            ubigeo=_str(d.get("ubigeo")),
            departamento=_str(d.get("departamento")),
            provincia=_str(d.get("provincia")),
            distrito=_str(d.get("distrito")),
            codigo_pais=_str(d.get("codigoPais", "PE")),
            correo=_str(d.get("correo")),
        )


@dataclass(frozen=True)
class Customer:
    """Cliente, the buyer. tipo_doc follows catalog 06 (1 DNI, 6 RUC, ...)."""

    numero_doc: str
    tipo_doc: str
    razon_social: str
    ubigeo: str = ""
    direccion: str = ""
    departamento: str = ""
    provincia: str = ""
    distrito: str = ""
    codigo_pais: str = "PE"
    correo: str = ""

    @classmethod
    def from_dict(cls, d: dict) -> Customer:
        return cls(
            numero_doc=_str(d.get("numeroDoc")),
            tipo_doc=_str(d.get("tipoDoc")),
            razon_social=_str(d.get("razonSocial")),
            ubigeo=_str(d.get("ubigeo")),
            direccion=_str(d.get("direccion")),
            departamento=_str(d.get("departamento")),
            provincia=_str(d.get("provincia")),
            distrito=_str(d.get("distrito")),
            codigo_pais=_str(d.get("codigoPais", "PE")),
            correo=_str(d.get("correo")),
        )


@dataclass(frozen=True)
class LineItem:
    quantity: Decimal
    unit_code: str
    description: str
    unit_value: Decimal  # valor unitario, without tax
    unit_price: Decimal  # precio de venta unitario, with tax
    line_total: Decimal  # valor de venta of the line, without tax
    tax_amount: Decimal
    affectation_code: str  # catalog 07
    product_code: str = ""
    sunat_product_code: str = ""
    price_type_code: str = "01"  # catalog 16
    unspsc: str = ""

    @classmethod
    def from_dict(cls, d: dict) -> LineItem:
        return cls(
            quantity=_dec(d.get("cantidad"), "cantidad"),
            unit_code=_str(d.get("unidadMedida", "NIU")),
            description=_str(d.get("descripcion")),
            unit_value=_dec(d.get("valorUnitario"), "valorUnitario"),
            unit_price=_dec(d.get("precioVentaUnitario"), "precioVentaUnitario"),
            line_total=_dec(d.get("valorTotal"), "valorTotal"),
            tax_amount=_dec(d.get("igv"), "igv"),
            affectation_code=_str(d.get("tipoAfectacionIGV")),
            product_code=_str(d.get("codigoProducto")),
            sunat_product_code=_str(d.get("codigoProductoSUNAT")),
            price_type_code=_str(d.get("codigoTipoPrecio", "01")),
            unspsc=_str(d.get("unspsc")),
        )


@dataclass(frozen=True)
class LegendNote:
    """Leyenda: catalog 52 code plus free text (e.g. amount in words)."""

    code: str
    text: str

    @classmethod
    def from_dict(cls, d: dict) -> LegendNote:
        return cls(code=_str(d.get("codigo")), text=_str(d.get("descripcion")))


@dataclass(frozen=True)
class Installment:
    """Cuota of a credit sale."""

    number: str
    amount: Decimal
    due_date: str

    @classmethod
    def from_dict(cls, d: dict) -> Installment:
        return cls(
            number=_str(d.get("numero")),
            amount=_dec(d.get("importe"), "importe"),
            due_date=_str(d.get("fechaVencimiento")),
        )


@dataclass(frozen=True)
class DocumentTotals:
    total_taxed: Decimal
    total_tax: Decimal
    total_sale: Decimal  # tax-inclusive
    total_payable: Decimal


@dataclass(frozen=True)
class CanonicalDocument:
    series: str
    number: str
    issue_date: str  # YYYY-MM-DD
    issue_time: str  # HH:MM:SS
    document_type: str  # catalog 01
    currency: str
    issuer: Issuer
    customer: Customer
    items: tuple[LineItem, ...]
    totals: DocumentTotals
    payment_form: str = "Contado"
    due_date: str | None = None
    legends: tuple[LegendNote, ...] = ()
    installments: tuple[Installment, ...] = ()
    perception_type: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> CanonicalDocument:
        """Create a document from the JSON/YAML request shape."""
        return cls(
            series=_str(d.get("serie")),
            number=_str(d.get("numero")),
            issue_date=_str(d.get("fechaEmision")),
            issue_time=_str(d.get("horaEmision")),
            document_type=_str(d.get("tipoDocumento")),
            currency=_str(d.get("moneda")),
            issuer=Issuer.from_dict(_mapping(d.get("emisor"), "emisor")),
            customer=Customer.from_dict(_mapping(d.get("cliente"), "cliente")),
            items=tuple(LineItem.from_dict(i) for i in _entries(d.get("items"), "items")),
            totals=DocumentTotals(
                total_taxed=_dec(d.get("totalGravado"), "totalGravado"),
                total_tax=_dec(d.get("totalIGV"), "totalIGV"),
                total_sale=_dec(d.get("totalPrecioVenta"), "totalPrecioVenta"),
                total_payable=_dec(d.get("totalImportePagar"), "totalImportePagar"),
            ),
            payment_form=_str(d.get("formaPago", "Contado")),
            due_date=d.get("fechaVencimiento") or None,
            legends=tuple(LegendNote.from_dict(n) for n in _entries(d.get("leyendas"), "leyendas")),
            installments=tuple(Installment.from_dict(c) for c in _entries(d.get("cuotas"), "cuotas")),
            perception_type=d.get("tipoPercepcion") or None,
        )

    @property
    def document_id(self) -> str:
        """Series-number as printed on the document, e.g. F001-123."""
        return f"{self.series}-{self.number}"
