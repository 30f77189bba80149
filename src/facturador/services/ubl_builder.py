"""UBL 2.1 Invoice synthesis with the SUNAT extensions.

The builder turns a CanonicalDocument plus its TaxSummary into an lxml tree
whose element order follows the SUNAT schema. The first UBLExtension is left
empty so the signer can drop the ds:Signature into it.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from lxml import etree

from facturador.models.document import (
    BUILDABLE_TYPES,
    CanonicalDocument,
    Customer,
    Issuer,
    LineItem,
)
from facturador.services.exceptions import DocumentBuildError
from facturador.services.tax_classifier import (
    CATALOG,
    FREE_TRANSFER_CODE,
    Perception,
    TaxCategory,
    TaxSummary,
    compute_perception,
)
from facturador.utils.formatters import format_amount, format_percent, format_quantity
from facturador.utils.naming import document_base_name

INVOICE_NS = "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2"
CAC_NS = "urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2"
CBC_NS = "urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2"
EXT_NS = "urn:oasis:names:specification:ubl:schema:xsd:CommonExtensionComponents-2"
SAC_NS = "urn:sunat:names:specification:ubl:peru:schema:xsd:SunatAggregateComponents-1"
DS_NS = "http://www.w3.org/2000/09/xmldsig#"

NSMAP = {
    None: INVOICE_NS,
    "cac": CAC_NS,
    "cbc": CBC_NS,
    "ccts": "urn:un:unece:uncefact:documentation:2",
    "ds": DS_NS,
    "ext": EXT_NS,
    "qdt": "urn:oasis:names:specification:ubl:schema:xsd:QualifiedDatatypes-2",
    "sac": SAC_NS,
    "udt": "urn:un:unece:uncefact:data:specification:UnqualifiedDataTypesSchemaModule:2",
    "xsd": "http://www.w3.org/2001/XMLSchema",
    "xsi": "http://www.w3.org/2001/XMLSchema-instance",
}

EXTENSION_SLOT_TAG = f"{{{EXT_NS}}}ExtensionContent"
SIGNATURE_ID = "SignatureSP"

UBL_VERSION = "2.1"
CUSTOMIZATION_VERSION = "2.0"
OPERATION_TYPE = "0101"  # catalog 51: venta interna

_SUNAT = "PE:SUNAT"
_UNECE = "United Nations Economic Commission for Europe"
_CATALOG_URI = "urn:pe:gob:sunat:cpe:see:gem:catalogos:catalogo{:02d}"


@dataclass(frozen=True)
class UnsignedArtifact:
    """Serialized document ready for signing. base_name is RUC-TT-SERIE-NUM."""

    base_name: str
    xml: bytes

    def tree(self) -> etree._Element:
        return etree.fromstring(self.xml)


def _cbc(parent: etree._Element, tag: str, text: str | None = None, **attrs: str) -> etree._Element:
    el = etree.SubElement(parent, f"{{{CBC_NS}}}{tag}")
    for key, value in attrs.items():
        el.set(key, value)
    if text is not None:
        el.text = text
    return el


def _cdata(parent: etree._Element, tag: str, text: str) -> etree._Element:
    el = _cbc(parent, tag)
    if text:
        el.text = etree.CDATA(text)
    return el


def _cac(parent: etree._Element, tag: str) -> etree._Element:
    return etree.SubElement(parent, f"{{{CAC_NS}}}{tag}")


def _amount(parent: etree._Element, tag: str, value: Decimal, currency: str) -> etree._Element:
    return _cbc(parent, tag, format_amount(value), currencyID=currency)


def _extensions(root: etree._Element, perception: Perception | None, currency: str, issue_date: str) -> None:
    exts = etree.SubElement(root, f"{{{EXT_NS}}}UBLExtensions")
    slot_ext = etree.SubElement(exts, f"{{{EXT_NS}}}UBLExtension")
    etree.SubElement(slot_ext, EXTENSION_SLOT_TAG)

    if perception is None:
        return
    ext = etree.SubElement(exts, f"{{{EXT_NS}}}UBLExtension")
    content = etree.SubElement(ext, EXTENSION_SLOT_TAG)
    perc = etree.SubElement(content, f"{{{SAC_NS}}}SUNATPerception")

    def sac(tag: str, text: str, **attrs: str) -> None:
        el = etree.SubElement(perc, f"{{{SAC_NS}}}{tag}")
        for key, value in attrs.items():
            el.set(key, value)
        el.text = text

    sac("SUNATPerceptionSystemCode", perception.system_code)
    sac("SUNATPerceptionPercent", format_percent(perception.percent))
    sac("TotalInvoiceAmount", format_amount(perception.base_amount), currencyID=currency)
    sac("SUNATPerceptionAmount", format_amount(perception.amount), currencyID=currency)
    sac("SUNATPerceptionDate", issue_date)
    sac("SUNATNetTotalCashed", format_amount(perception.net_total), currencyID=currency)


def _party_id_attrs(scheme_id: str, scheme_name: str) -> dict[str, str]:
    return {
        "schemeID": scheme_id,
        "schemeName": scheme_name,
        "schemeAgencyName": _SUNAT,
        "schemeURI": _CATALOG_URI.format(6),
    }


def _signature_block(root: etree._Element, doc: CanonicalDocument) -> None:
    sig = _cac(root, "Signature")
    _cbc(sig, "ID", doc.document_id)
    party = _cac(sig, "SignatoryParty")
    _cbc(_cac(party, "PartyIdentification"), "ID", doc.issuer.ruc)
    _cdata(_cac(party, "PartyName"), "Name", doc.issuer.razon_social)
    attachment = _cac(sig, "DigitalSignatureAttachment")
    _cbc(_cac(attachment, "ExternalReference"), "URI", f"#{SIGNATURE_ID}")


def _party(
    parent: etree._Element,
    wrapper: str,
    *,
    doc_number: str,
    doc_type: str,
    name: str,
    trade_name: str,
    ubigeo: str,
    address: str,
    department: str,
    province: str,
    district: str,
    country: str,
    contact: str | None = None,
) -> None:
    party = _cac(_cac(parent, wrapper), "Party")

    _cbc(
        _cac(party, "PartyIdentification"),
        "ID",
        doc_number,
        **_party_id_attrs(doc_type, "Documento de Identidad"),
    )
    _cdata(_cac(party, "PartyName"), "Name", trade_name or name)

    tax_scheme = _cac(party, "PartyTaxScheme")
    _cdata(tax_scheme, "RegistrationName", name)
    scheme_attrs = _party_id_attrs(doc_type, "SUNAT:Identificador de Documento de Identidad")
    _cbc(tax_scheme, "CompanyID", doc_number, **scheme_attrs)
    _cbc(_cac(tax_scheme, "TaxScheme"), "ID", doc_number, **scheme_attrs)

    legal = _cac(party, "PartyLegalEntity")
    _cdata(legal, "RegistrationName", name)
    addr = _cac(legal, "RegistrationAddress")
    _cbc(addr, "ID", ubigeo, schemeName="Ubigeos", schemeAgencyName="PE:INEI")
    _cbc(addr, "AddressTypeCode", "0000", listAgencyName=_SUNAT, listName="Establecimientos anexos")
    _cdata(addr, "CityName", province)
    _cdata(addr, "CountrySubentity", department)
    _cdata(addr, "District", district)
    _cdata(_cac(addr, "AddressLine"), "Line", address)
    _cbc(
        _cac(addr, "Country"),
        "IdentificationCode",
        country,
        listID="ISO 3166-1",
        listAgencyName=_UNECE,
        listName="Country",
    )

    if contact is not None:
        _cdata(_cac(party, "Contact"), "Name", contact)


def _supplier(root: etree._Element, issuer: Issuer) -> None:
    _party(
        root,
        "AccountingSupplierParty",
        doc_number=issuer.ruc,
        doc_type="6",
        name=issuer.razon_social,
        trade_name=issuer.nombre_comercial,
        ubigeo=issuer.ubigeo,
        address=issuer.direccion,
        department=issuer.departamento,
        province=issuer.provincia,
        district=issuer.distrito,
        country=issuer.codigo_pais,
        contact=issuer.correo,
    )


def _customer(root: etree._Element, customer: Customer) -> None:
    _party(
        root,
        "AccountingCustomerParty",
        doc_number=customer.numero_doc,
        doc_type=customer.tipo_doc,
        name=customer.razon_social,
        trade_name="",
        ubigeo=customer.ubigeo,
        address=customer.direccion,
        department=customer.departamento,
        province=customer.provincia,
        district=customer.distrito,
        country=customer.codigo_pais,
    )


def _payment_terms(root: etree._Element, doc: CanonicalDocument) -> None:
    terms = _cac(root, "PaymentTerms")
    _cbc(terms, "ID", "FormaPago")
    _cbc(terms, "PaymentMeansID", doc.payment_form)
    _amount(terms, "Amount", doc.totals.total_payable, doc.currency)

    if doc.payment_form.lower() != "credito":
        return
    for installment in doc.installments:
        cuota = _cac(root, "PaymentTerms")
        _cbc(cuota, "ID", "FormaPago")
        _cbc(cuota, "PaymentMeansID", installment.number)
        _amount(cuota, "Amount", installment.amount, doc.currency)
        _cbc(cuota, "PaymentDueDate", installment.due_date)


def _tax_category(parent: etree._Element, code: str, category: TaxCategory) -> None:
    cat = _cac(parent, "TaxCategory")
    _cbc(
        cat,
        "ID",
        category.category_id,
        schemeID="UN/ECE 5305",
        schemeName="Tax Category Identifier",
        schemeAgencyName=_UNECE,
    )
    _cbc(cat, "Percent", format_percent(category.rate))
    _cbc(
        cat,
        "TaxExemptionReasonCode",
        code,
        listAgencyName=_SUNAT,
        listName="Afectacion del IGV",
        listURI=_CATALOG_URI.format(7),
    )
    scheme = _cac(cat, "TaxScheme")
    _cbc(scheme, "ID", category.scheme_id, schemeID="UN/ECE 5153", schemeAgencyName=_SUNAT)
    _cbc(scheme, "Name", category.name)
    _cbc(scheme, "TaxTypeCode", category.type_code)


def _tax_subtotal(
    parent: etree._Element,
    base: Decimal,
    tax: Decimal,
    code: str,
    category: TaxCategory,
    currency: str,
) -> None:
    sub = _cac(parent, "TaxSubtotal")
    _amount(sub, "TaxableAmount", base, currency)
    _amount(sub, "TaxAmount", tax, currency)
    _tax_category(sub, code, category)


def _document_tax_total(root: etree._Element, summary: TaxSummary, currency: str) -> None:
    total = _cac(root, "TaxTotal")
    _amount(total, "TaxAmount", summary.total_tax, currency)
    for bucket in summary.buckets:
        _tax_subtotal(total, bucket.taxable_base, bucket.tax_amount, bucket.code, bucket.category, currency)


def _monetary_total(root: etree._Element, doc: CanonicalDocument, summary: TaxSummary) -> None:
    total = _cac(root, "LegalMonetaryTotal")
    _amount(total, "LineExtensionAmount", summary.line_extension_total, doc.currency)
    _amount(total, "TaxInclusiveAmount", doc.totals.total_sale, doc.currency)
    _amount(total, "PayableAmount", doc.totals.total_payable, doc.currency)


def _invoice_line(root: etree._Element, position: int, item: LineItem, currency: str) -> None:
    category = CATALOG[item.affectation_code]

    # Free transfers carry no price; the unit value goes to the reference price
    reference_price = item.unit_price
    price_amount = item.unit_value
    if item.affectation_code == FREE_TRANSFER_CODE:
        reference_price = item.unit_value
        price_amount = Decimal("0")

    line = _cac(root, "InvoiceLine")
    _cbc(line, "ID", str(position))
    _cbc(
        line,
        "InvoicedQuantity",
        format_quantity(item.quantity),
        unitCode=item.unit_code,
        unitCodeListID="UN/ECE rec 20",
        unitCodeListAgencyName=_UNECE,
    )
    _amount(line, "LineExtensionAmount", item.line_total, currency)

    alt = _cac(_cac(line, "PricingReference"), "AlternativeConditionPrice")
    _cbc(alt, "PriceAmount", format_quantity(reference_price), currencyID=currency)
    _cbc(
        alt,
        "PriceTypeCode",
        item.price_type_code,
        listName="Tipo de Precio",
        listAgencyName=_SUNAT,
        listURI=_CATALOG_URI.format(16),
    )

    tax_total = _cac(line, "TaxTotal")
    _amount(tax_total, "TaxAmount", item.tax_amount, currency)
    _tax_subtotal(tax_total, item.line_total, item.tax_amount, item.affectation_code, category, currency)

    it = _cac(line, "Item")
    _cdata(it, "Description", item.description)
    _cdata(_cac(it, "SellersItemIdentification"), "ID", item.product_code)
    # catalog 25 product code; the plain UNSPSC code fills in when absent
    _cbc(
        _cac(it, "CommodityClassification"),
        "ItemClassificationCode",
        item.sunat_product_code or item.unspsc,
        listID="UNSPSC",
        listAgencyName="GS1 US",
        listName="Item Classification",
    )

    _cbc(_cac(line, "Price"), "PriceAmount", format_quantity(price_amount), currencyID=currency)


def build_invoice(doc: CanonicalDocument, summary: TaxSummary) -> etree._Element:
    """Build the UBL Invoice tree for a factura or boleta.

    Returns the normalized <Invoice> root, with an empty signature slot.
    """
    if doc.document_type not in BUILDABLE_TYPES:
        raise DocumentBuildError(
            f"Tipo de documento no soportado: '{doc.document_type}'",
            code="UNSUPPORTED_TYPE",
        )

    perception = compute_perception(doc.document_type, doc.perception_type, doc.totals.total_payable)

    try:
        root = etree.Element(f"{{{INVOICE_NS}}}Invoice", nsmap=NSMAP)  # type: ignore[arg-type]  # lxml stubs don't model None key for default ns
        _extensions(root, perception, doc.currency, doc.issue_date)

        _cbc(root, "UBLVersionID", UBL_VERSION)
        _cbc(root, "CustomizationID", CUSTOMIZATION_VERSION, schemeAgencyName=_SUNAT)
        _cbc(
            root,
            "ProfileID",
            OPERATION_TYPE,
            schemeName="Tipo de Operacion",
            schemeAgencyName=_SUNAT,
            schemeURI=_CATALOG_URI.format(51),
        )
        _cbc(root, "ID", doc.document_id)
        _cbc(root, "IssueDate", doc.issue_date)
        _cbc(root, "IssueTime", doc.issue_time)
        if doc.due_date:
            _cbc(root, "DueDate", doc.due_date)
        _cbc(
            root,
            "InvoiceTypeCode",
            doc.document_type,
            listAgencyName=_SUNAT,
            listName="Tipo de Documento",
            listURI=_CATALOG_URI.format(1),
            listID=OPERATION_TYPE,
        )
        for legend in doc.legends:
            _cbc(root, "Note", legend.text, languageLocaleID=legend.code)
        _cbc(
            root,
            "DocumentCurrencyCode",
            doc.currency,
            listID="ISO 4217 Alpha",
            listName="Currency",
            listAgencyName=_UNECE,
        )
        _cbc(root, "LineCountNumeric", str(len(doc.items)))

        _signature_block(root, doc)
        _supplier(root, doc.issuer)
        _customer(root, doc.customer)
        _payment_terms(root, doc)
        _document_tax_total(root, summary, doc.currency)
        _monetary_total(root, doc, summary)

        for position, item in enumerate(doc.items, start=1):
            _invoice_line(root, position, item, doc.currency)
    except KeyError as exc:
        raise DocumentBuildError(f"Tipo de afectacion sin clasificar: {exc}") from exc
    except (ValueError, TypeError) as exc:
        # lxml rejects control characters and other non-XML text
        raise DocumentBuildError(f"Error al construir XML: {exc}") from exc

    return normalize(root)


def _is_contentless(el: etree._Element) -> bool:
    # catalog attributes alone do not make an element meaningful
    return len(el) == 0 and not (el.text and el.text.strip())


def _prune(el: etree._Element) -> None:
    for child in list(el):
        _prune(child)
        if child.tag != EXTENSION_SLOT_TAG and _is_contentless(child):
            el.remove(child)


def normalize(root: etree._Element) -> etree._Element:
    """Drop empty-valued attributes, then elements left without text or children.

    SUNAT's schema rejects blank optional attributes and empty elements. The
    signature slot is kept even though it is empty.
    """
    for el in root.iter():
        for name in [n for n, v in el.attrib.items() if v == ""]:
            del el.attrib[name]
    _prune(root)
    return root


def serialize(doc: CanonicalDocument, summary: TaxSummary) -> UnsignedArtifact:
    """Build and serialize the document; identical input yields identical bytes."""
    try:
        base_name = document_base_name(doc.issuer.ruc, doc.document_type, doc.series, doc.number)
    except ValueError as exc:
        raise DocumentBuildError(str(exc)) from exc
    root = build_invoice(doc, summary)
    xml = etree.tostring(root, xml_declaration=True, encoding="UTF-8")
    return UnsignedArtifact(base_name=base_name, xml=xml)


def find_extension_slot(root: etree._Element) -> etree._Element | None:
    """Return the first ext:ExtensionContent, the one reserved for the signature."""
    return root.find(f"{{{EXT_NS}}}UBLExtensions/{{{EXT_NS}}}UBLExtension/{EXTENSION_SLOT_TAG}")
