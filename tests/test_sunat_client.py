from __future__ import annotations

import base64
from unittest.mock import MagicMock, patch

import pytest
import requests.exceptions
from lxml import etree

from facturador.services.exceptions import ProtocolError, TransmissionError
from facturador.services.packaging import Archive
from facturador.services.sunat_client import (
    SER_NS,
    SOAPENV_NS,
    WSSE_NS,
    build_envelope,
    parse_response,
    send_bill,
)
from tests.conftest import make_cdr_zip, soap_fault, soap_success

ENDPOINT = "https://sunat.test/billService"


def _resp(status: int, body: bytes) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.ok = status < 400
    resp.content = body
    resp.text = body.decode()
    return resp


@pytest.fixture(autouse=True)
def _no_sleep():
    with patch("facturador.services.http_retry._calc_delay", return_value=0.0):
        yield


class TestBuildEnvelope:
    def test_structure(self):
        archive = Archive(name="20123456789-01-F001-1.ZIP", content=b"PK\x03\x04zip")
        root = etree.fromstring(build_envelope("20123456789", "MODDATOS", "secret", archive))

        assert root.tag == f"{{{SOAPENV_NS}}}Envelope"
        token = root.find(f"{{{SOAPENV_NS}}}Header/{{{WSSE_NS}}}Security/{{{WSSE_NS}}}UsernameToken")
        assert token.findtext(f"{{{WSSE_NS}}}Username") == "20123456789MODDATOS"
        assert token.findtext(f"{{{WSSE_NS}}}Password") == "secret"

        send = root.find(f"{{{SOAPENV_NS}}}Body/{{{SER_NS}}}sendBill")
        assert send.findtext("fileName") == "20123456789-01-F001-1.ZIP"
        assert base64.b64decode(send.findtext("contentFile")) == b"PK\x03\x04zip"


class TestParseResponse:
    def test_success(self):
        cdr = make_cdr_zip("X", "0")
        response = parse_response(soap_success(cdr))
        assert not response.is_fault
        assert response.cdr_zip == cdr

    def test_fault(self):
        response = parse_response(soap_fault("soap-env:Client.0111", "No tiene el perfil"))
        assert response.is_fault
        assert response.fault_code == "soap-env:Client.0111"
        assert response.fault_string == "No tiene el perfil"
        assert response.cdr_zip == b""

    def test_not_xml(self):
        with pytest.raises(ProtocolError):
            parse_response(b"<html>oops")

    def test_neither_fault_nor_receipt(self):
        with pytest.raises(ProtocolError, match="applicationResponse"):
            parse_response(b"<Envelope><Body/></Envelope>")

    def test_bad_base64(self):
        body = (
            b'<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"><s:Body>'
            b"<sendBillResponse><applicationResponse>@@@</applicationResponse></sendBillResponse>"
            b"</s:Body></s:Envelope>"
        )
        with pytest.raises(ProtocolError, match="base64"):
            parse_response(body)


class TestSendBill:
    @patch("facturador.services.sunat_client.post")
    def test_posts_envelope(self, mock_post):
        mock_post.return_value = _resp(200, soap_success(make_cdr_zip("X", "0")))
        send_bill(b"<env/>", ENDPOINT, 12.5)

        args, kwargs = mock_post.call_args
        assert args == (ENDPOINT,)
        assert kwargs["data"] == b"<env/>"
        assert kwargs["timeout"] == 12.5
        assert kwargs["headers"]["SOAPAction"] == ""
        assert kwargs["headers"]["Content-Type"].startswith("text/xml")

    @patch("facturador.services.sunat_client.post")
    def test_fault_with_http_500(self, mock_post):
        mock_post.return_value = _resp(500, soap_fault("soap-env:Client.1033", "Registrado previamente"))
        response = send_bill(b"<env/>", ENDPOINT, 5)
        assert response.is_fault
        assert response.fault_code == "soap-env:Client.1033"

    @patch("facturador.services.sunat_client.post")
    def test_http_error_without_soap_body(self, mock_post):
        mock_post.return_value = _resp(503, b"Service Unavailable")
        with pytest.raises(TransmissionError, match="503") as exc_info:
            send_bill(b"<env/>", ENDPOINT, 5)
        assert exc_info.value.retryable is False

    @patch("facturador.services.sunat_client.post")
    def test_garbage_with_http_200(self, mock_post):
        mock_post.return_value = _resp(200, b"not xml")
        with pytest.raises(ProtocolError):
            send_bill(b"<env/>", ENDPOINT, 5)

    @patch("facturador.services.sunat_client.post")
    def test_connection_error_retried_then_raised(self, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(TransmissionError) as exc_info:
            send_bill(b"<env/>", ENDPOINT, 5)
        assert exc_info.value.retryable is True
        assert mock_post.call_count == 3

    @patch("facturador.services.sunat_client.post")
    def test_connection_error_recovers(self, mock_post):
        mock_post.side_effect = [
            requests.exceptions.ConnectionError("reset"),
            _resp(200, soap_success(make_cdr_zip("X", "0"))),
        ]
        response = send_bill(b"<env/>", ENDPOINT, 5)
        assert not response.is_fault
        assert mock_post.call_count == 2

    @patch("facturador.services.sunat_client.post")
    def test_read_timeout_not_retried(self, mock_post):
        mock_post.side_effect = requests.exceptions.ReadTimeout("slow")
        with pytest.raises(TransmissionError, match="Tiempo de espera") as exc_info:
            send_bill(b"<env/>", ENDPOINT, 5)
        assert exc_info.value.retryable is False
        assert mock_post.call_count == 1
