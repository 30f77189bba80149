from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass

import requests.exceptions
from lxml import etree
from requests import post

from facturador.services.exceptions import ProtocolError, TransmissionError
from facturador.services.http_retry import SUNAT_SEND, RetryPolicy, retry_call
from facturador.services.packaging import Archive

logger = logging.getLogger(__name__)

SOAPENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SER_NS = "http://service.sunat.gob.pe"
WSSE_NS = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd"

_ENVELOPE_NSMAP = {"soapenv": SOAPENV_NS, "ser": SER_NS, "wsse": WSSE_NS}

HEADERS = {
    "Content-Type": 'text/xml; charset="utf-8"',
    "SOAPAction": "",
}


@dataclass(frozen=True)
class BillResponse:
    """Decoded sendBill answer: either a SOAP fault or the receipt archive."""

    fault_code: str = ""
    fault_string: str = ""
    cdr_zip: bytes = b""

    @property
    def is_fault(self) -> bool:
        return bool(self.fault_code)


def build_envelope(ruc: str, sol_user: str, sol_password: str, archive: Archive) -> bytes:
    """Build the SOAP 1.1 sendBill request.

    The WS-Security username is the RUC followed by the SOL user with no
    separator (e.g. ``20123456789MODDATOS``).
    """
    envelope = etree.Element(f"{{{SOAPENV_NS}}}Envelope", nsmap=_ENVELOPE_NSMAP)

    header = etree.SubElement(envelope, f"{{{SOAPENV_NS}}}Header")
    security = etree.SubElement(header, f"{{{WSSE_NS}}}Security")
    token = etree.SubElement(security, f"{{{WSSE_NS}}}UsernameToken")
    etree.SubElement(token, f"{{{WSSE_NS}}}Username").text = f"{ruc}{sol_user}"
    etree.SubElement(token, f"{{{WSSE_NS}}}Password").text = sol_password

    body = etree.SubElement(envelope, f"{{{SOAPENV_NS}}}Body")
    send_bill = etree.SubElement(body, f"{{{SER_NS}}}sendBill")
    etree.SubElement(send_bill, "fileName").text = archive.name
    etree.SubElement(send_bill, "contentFile").text = base64.b64encode(archive.content).decode("ascii")

    return etree.tostring(envelope, xml_declaration=True, encoding="UTF-8")


def _local(root: etree._Element, name: str) -> etree._Element | None:
    found = root.xpath(f"//*[local-name()='{name}']")
    return found[0] if found else None


def parse_response(body: bytes) -> BillResponse:
    """Decode a sendBill response body.

    Raises ProtocolError when the body is not XML or has neither a fault nor
    an applicationResponse.
    """
    try:
        root = etree.fromstring(body)
    except etree.XMLSyntaxError as exc:
        raise ProtocolError(f"Respuesta SOAP no es XML: {exc}") from exc

    fault = _local(root, "Fault")
    if fault is not None:
        code = (fault.findtext("faultcode") or "").strip()
        text = (fault.findtext("faultstring") or "").strip()
        if not code:
            raise ProtocolError("SOAP Fault sin faultcode")
        return BillResponse(fault_code=code, fault_string=text)

    app_response = _local(root, "applicationResponse")
    if app_response is None or not (app_response.text or "").strip():
        raise ProtocolError("Respuesta SOAP sin applicationResponse ni Fault")

    try:
        cdr_zip = base64.b64decode("".join(app_response.text.split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ProtocolError(f"applicationResponse no es base64 valido: {exc}") from exc
    return BillResponse(cdr_zip=cdr_zip)


def send_bill(
    envelope: bytes,
    endpoint: str,
    timeout: float,
    *,
    policy: RetryPolicy = SUNAT_SEND,
) -> BillResponse:
    """POST the envelope to SUNAT and decode the answer.

    SUNAT reports faults with HTTP 500, so the body is parsed before the
    status code is looked at.
    """

    def _do_post():
        return post(endpoint, data=envelope, headers=HEADERS, timeout=timeout)

    try:
        resp = retry_call(_do_post, policy)
    except requests.exceptions.ConnectionError as exc:
        raise TransmissionError(f"No se pudo conectar con SUNAT: {exc}", retryable=True) from exc
    except requests.exceptions.Timeout as exc:
        raise TransmissionError(f"Tiempo de espera agotado ({timeout}s): {exc}") from exc
    except requests.exceptions.RequestException as exc:
        raise TransmissionError(f"Error HTTP enviando a SUNAT: {exc}") from exc

    logger.debug("SUNAT answered HTTP %s (%d bytes)", resp.status_code, len(resp.content or b""))

    try:
        return parse_response(resp.content)
    except ProtocolError:
        if not resp.ok:
            body = resp.text[:500] if resp.text else ""
            raise TransmissionError(f"SUNAT API error ({resp.status_code}): {body}") from None
        raise
