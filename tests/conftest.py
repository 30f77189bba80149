from __future__ import annotations

import base64
import copy
import io
import zipfile
from datetime import UTC, datetime, timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from lxml import etree

from facturador.config import Settings
from facturador.models.document import CanonicalDocument

CBC = "urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2"
CAC = "urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2"
NS = {
    "inv": "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2",
    "cac": CAC,
    "cbc": CBC,
    "ext": "urn:oasis:names:specification:ubl:schema:xsd:CommonExtensionComponents-2",
    "sac": "urn:sunat:names:specification:ubl:peru:schema:xsd:SunatAggregateComponents-1",
    "ds": "http://www.w3.org/2000/09/xmldsig#",
}


def xml_text(el: etree._Element, xpath: str) -> str | None:
    """Extract text from an XML element by xpath."""
    found = el.xpath(xpath, namespaces=NS)
    if not found:
        return None
    return found[0].text


def make_cdr_xml(code: str, description: str = "La Factura ha sido aceptada") -> bytes:
    """Minimal ApplicationResponse like the one SUNAT returns inside the CDR."""
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<ar:ApplicationResponse xmlns:ar="urn:oasis:names:specification:ubl:schema:xsd:ApplicationResponse-2"'
        f' xmlns:cac="{CAC}" xmlns:cbc="{CBC}">'
        "<cbc:ID>171234567890</cbc:ID>"
        "<cac:DocumentResponse><cac:Response>"
        "<cbc:ReferenceID>F001-1</cbc:ReferenceID>"
        f"<cbc:ResponseCode>{code}</cbc:ResponseCode>"
        f"<cbc:Description>{description}</cbc:Description>"
        "</cac:Response></cac:DocumentResponse>"
        "</ar:ApplicationResponse>"
    ).encode()


def make_cdr_zip(base_name: str, code: str, description: str = "La Factura ha sido aceptada") -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("dummy/", b"")
        zf.writestr(f"R-{base_name}.XML", make_cdr_xml(code, description))
    return buf.getvalue()


def soap_success(cdr_zip: bytes) -> bytes:
    payload = base64.b64encode(cdr_zip).decode()
    return (
        '<soap-env:Envelope xmlns:soap-env="http://schemas.xmlsoap.org/soap/envelope/">'
        "<soap-env:Header/><soap-env:Body>"
        '<br:sendBillResponse xmlns:br="http://service.sunat.gob.pe">'
        f"<applicationResponse>{payload}</applicationResponse>"
        "</br:sendBillResponse></soap-env:Body></soap-env:Envelope>"
    ).encode()


def soap_fault(code: str, text: str) -> bytes:
    return (
        '<soap-env:Envelope xmlns:soap-env="http://schemas.xmlsoap.org/soap/envelope/">'
        "<soap-env:Body><soap-env:Fault>"
        f"<faultcode>{code}</faultcode><faultstring>{text}</faultstring>"
        "</soap-env:Fault></soap-env:Body></soap-env:Envelope>"
    ).encode()


# --- Document fixtures ---


ISSUER = {
    "ruc": "20123456789",
    "razonSocial": "MI EMPRESA S.A.C.",
    "nombreComercial": "MI EMPRESA",
    "direccion": "AV. LOS OLIVOS 123",
    "ubigeo": "150101",
    "departamento": "LIMA",
    "provincia": "LIMA",
    "distrito": "LIMA",
    "codigoPais": "PE",
}


@pytest.fixture
def factura_dict() -> dict:
    return {
        "serie": "F001",
        "numero": "1",
        "fechaEmision": "2024-05-10",
        "horaEmision": "10:30:00",
        "tipoDocumento": "01",
        "moneda": "PEN",
        "formaPago": "Contado",
        "emisor": dict(ISSUER),
        "cliente": {
            "tipoDoc": "6",
            "numeroDoc": "20987654321",
            "razonSocial": "CLIENTE CORPORATIVO S.A.",
            "direccion": "JR. UNION 456",
        },
        "items": [
            {
                "cantidad": "1",
                "unidadMedida": "NIU",
                "descripcion": "SERVICIO DE SOPORTE",
                "valorUnitario": "100.00",
                "precioVentaUnitario": "118.00",
                "valorTotal": "100.00",
                "igv": "18.00",
                "tipoAfectacionIGV": "10",
                "codigoProducto": "SOP-01",
            }
        ],
        "totalGravado": "100.00",
        "totalIGV": "18.00",
        "totalPrecioVenta": "118.00",
        "totalImportePagar": "118.00",
        "leyendas": [{"codigo": "1000", "descripcion": "CIENTO DIECIOCHO CON 00/100 SOLES"}],
    }


@pytest.fixture
def factura(factura_dict) -> CanonicalDocument:
    return CanonicalDocument.from_dict(factura_dict)


@pytest.fixture
def boleta_dict(factura_dict) -> dict:
    d = copy.deepcopy(factura_dict)
    d["serie"] = "B001"
    d["tipoDocumento"] = "03"
    d["cliente"] = {"tipoDoc": "1", "numeroDoc": "45678912", "razonSocial": "JUAN PEREZ"}
    return d


# --- Certificate / PFX fixtures ---


@pytest.fixture(scope="session")
def test_key_and_cert():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, "Test Certificate"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Org"),
        ]
    )
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(datetime.now(UTC) - timedelta(days=1))
        .not_valid_after(datetime.now(UTC) + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return key, cert


@pytest.fixture(scope="session")
def self_signed_pem(test_key_and_cert):
    key, cert = test_key_and_cert
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    return key_pem, cert_pem


@pytest.fixture(scope="session")
def ec_key_pem() -> bytes:
    key = ec.generate_private_key(ec.SECP256R1())
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture
def test_pfx(tmp_path, test_key_and_cert):
    key, cert = test_key_and_cert
    password = b"testpass"
    pfx_data = pkcs12.serialize_key_and_certificates(
        name=b"test",
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(password),
    )
    pfx_path = tmp_path / "test.pfx"
    pfx_path.write_bytes(pfx_data)
    return str(pfx_path), "testpass"


@pytest.fixture
def settings(tmp_path, test_pfx) -> Settings:
    pfx_path, password = test_pfx
    return Settings(
        env="beta",
        endpoint="https://sunat.test/billService",
        sol_user="MODDATOS",
        sol_password="MODDATOS",
        cert_path=pfx_path,
        cert_password=password,
        data_dir=tmp_path / "data",
        timeout=5.0,
    )
