from __future__ import annotations

import copy
import logging
from dataclasses import dataclass

from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import load_pem_private_key
from lxml import etree
from signxml.algorithms import (
    DigestAlgorithm,
    SignatureConstructionMethod,
    SignatureMethod,
)
from signxml.exceptions import SignXMLException
from signxml.signer import XMLSigner
from signxml.verifier import XMLVerifier

from facturador.services.exceptions import SignatureError
from facturador.services.ubl_builder import (
    DS_NS,
    SIGNATURE_ID,
    UnsignedArtifact,
    find_extension_slot,
)

logger = logging.getLogger(__name__)

EXC_C14N = "http://www.w3.org/2001/10/xml-exc-c14n#"

_SIGNATURE_TAG = f"{{{DS_NS}}}Signature"


@dataclass(frozen=True)
class SignedArtifact:
    """Final signed document plus the values SUNAT shows on the printed copy."""

    base_name: str
    xml: bytes
    digest_value: str
    signature_value: str

    def tree(self) -> etree._Element:
        return etree.fromstring(self.xml)


def _require_rsa(key_pem: bytes) -> None:
    try:
        key = load_pem_private_key(key_pem, password=None)
    except (ValueError, TypeError) as exc:
        raise SignatureError(f"Clave privada ilegible: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise SignatureError(
            f"Solo se admiten claves RSA, se recibio {type(key).__name__}",
            code="UNSUPPORTED_KEY",
        )


def _relocate_signature(signed: etree._Element) -> etree._Element:
    """Return a copy of *signed* with ds:Signature moved into the extension slot.

    The reference is enveloped, so moving the signature inside the same
    document leaves the digest intact.
    """
    relocated = copy.deepcopy(signed)
    signature = relocated.find(_SIGNATURE_TAG)
    if signature is None:
        raise SignatureError("El firmante no genero <ds:Signature>")
    slot = find_extension_slot(relocated)
    if slot is None:
        raise SignatureError("No se encontro <ext:ExtensionContent>", code="MISSING_SLOT")
    relocated.remove(signature)
    signature.set("Id", SIGNATURE_ID)
    slot.append(signature)
    return relocated


def _signature_values(signature: etree._Element) -> tuple[str, str]:
    digest = signature.findtext(f".//{{{DS_NS}}}Reference/{{{DS_NS}}}DigestValue", default="")
    value = signature.findtext(f"{{{DS_NS}}}SignatureValue", default="")
    return digest.strip(), "".join(value.split())


def sign_document(unsigned: UnsignedArtifact, key_pem: bytes, cert_pem: bytes) -> SignedArtifact:
    """Sign the document with an enveloped RSA-SHA256 signature.

    Uses Exclusive XML Canonicalization 1.0 without comments and an empty
    inclusive prefix list. The signature ends up inside the first
    ext:ExtensionContent, tagged with Id="SignatureSP".
    """
    try:
        root = unsigned.tree()
    except etree.XMLSyntaxError as exc:
        raise SignatureError(f"XML sin firmar invalido: {exc}") from exc

    if find_extension_slot(root) is None:
        raise SignatureError("No se encontro <ext:ExtensionContent>", code="MISSING_SLOT")

    _require_rsa(key_pem)

    signer = XMLSigner(
        method=SignatureConstructionMethod.enveloped,
        signature_algorithm=SignatureMethod.RSA_SHA256,
        digest_algorithm=DigestAlgorithm.SHA256,
        c14n_algorithm=EXC_C14N,
    )

    try:
        signed = signer.sign(root, key=key_pem, cert=cert_pem.decode())
    except (SignXMLException, ValueError, TypeError) as exc:
        raise SignatureError(f"Error firmando XML: {exc}") from exc

    final = _relocate_signature(signed)
    signatures = final.findall(f".//{_SIGNATURE_TAG}")
    if len(signatures) != 1:
        raise SignatureError(f"Se esperaba una firma, hay {len(signatures)}")

    digest, value = _signature_values(signatures[0])
    logger.debug("Signed %s (digest %s)", unsigned.base_name, digest)

    return SignedArtifact(
        base_name=unsigned.base_name,
        xml=etree.tostring(final, xml_declaration=True, encoding="UTF-8"),
        digest_value=digest,
        signature_value=value,
    )


def verify_document(signed: SignedArtifact, cert_pem: bytes) -> etree._Element:
    """Verify the signature against *cert_pem* and return the signed content.

    Raises SignatureError when the digest or signature does not match.
    """
    try:
        result = XMLVerifier().verify(signed.tree(), x509_cert=cert_pem.decode())
    except (SignXMLException, ValueError) as exc:
        raise SignatureError(f"Firma invalida: {exc}", code="INVALID_SIGNATURE") from exc
    return result.signed_xml
