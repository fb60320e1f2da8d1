import json
import socket
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import unquote, urlsplit

import pytest

from screentime_gateway.client import ClientConfig, ScreenTimeClient, encode_path_component
from screentime_gateway.crypto import SigningKey
from screentime_gateway.envelope import SignatureData
from screentime_gateway.errors import (
    ST_E_HTTP_STATUS,
    ST_E_INVALID_RESPONSE,
    ST_E_TRANSPORT,
    TransportFailure,
)
from screentime_gateway.keyset import KeySet, KeyType, public_keyset_from_dict
from screentime_gateway.models import ScreenTimeData
from screentime_gateway.signing import VerificationResult, verify_signature

KEY = SigningKey(bytes([7]) * 32)
MASTER = SigningKey(bytes([42]) * 32)


class _ServiceHandler(BaseHTTPRequestHandler):
    # Class-level response and capture of the last request.
    status = 200
    response = b""
    last = None

    def _handle(self):
        length = int(self.headers.get("Content-Length", "0") or "0")
        body = self.rfile.read(length) if length else b""
        parts = urlsplit(self.path)
        _ServiceHandler.last = {
            "method": self.command,
            "raw_path": parts.path,
            "components": [unquote(p) for p in parts.path.lstrip("/").split("/")],
            "query": parts.query,
            "body": body,
        }
        self.send_response(_ServiceHandler.status)
        self.send_header("Content-Length", str(len(_ServiceHandler.response)))
        self.end_headers()
        self.wfile.write(_ServiceHandler.response)

    do_GET = _handle  # noqa: N815
    do_PUT = _handle  # noqa: N815

    def log_message(self, format, *args):  # noqa: A003
        # Silence noisy test logs.
        return


@pytest.fixture
def service():
    _ServiceHandler.status = 200
    _ServiceHandler.response = b""
    _ServiceHandler.last = None

    httpd = HTTPServer(("127.0.0.1", 0), _ServiceHandler)
    host, port = httpd.server_address

    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()
    try:
        yield ScreenTimeClient("http", f"{host}:{port}", timeout_seconds=2)
    finally:
        httpd.shutdown()
        httpd.server_close()
        t.join(timeout=2)


def _verify_last(key: SigningKey) -> VerificationResult:
    last = _ServiceHandler.last
    envelope = SignatureData.from_query(last["query"])
    components = [last["method"], *last["components"]]
    return verify_signature(components, last["body"] or None, envelope, [key.public_key])


def test_path_components_are_percent_encoded_as_single_segments():
    assert encode_path_component("my id/1?x") == "my%20id%2F1%3Fx"
    assert encode_path_component("a:b@c") == "a:b@c"
    assert encode_path_component("ü") == "%C3%BC"


def test_load_screen_time_signs_raw_components(service):
    _ServiceHandler.response = b'{"available":100,"used":42}'

    data = service.load_screen_time("my id/1", 2024, 17, KEY)

    assert data == ScreenTimeData(available=100, used=42)
    last = _ServiceHandler.last
    assert last["method"] == "GET"
    assert last["raw_path"] == "/time/my%20id%2F1/2024/17"
    assert last["components"] == ["time", "my id/1", "2024", "17"]
    assert _verify_last(KEY) is VerificationResult.VALID


def test_put_screen_time_sends_canonical_json(service):
    service.put_screen_time(ScreenTimeData(available=100, used=42), "alice", 2024, 17, KEY)

    last = _ServiceHandler.last
    assert last["method"] == "PUT"
    assert last["body"] == b'{"available":100,"used":42}'
    assert _verify_last(KEY) is VerificationResult.VALID


def test_upload_keys_sends_public_registry_signed_by_master(service):
    private = KeySet(admin=SigningKey(bytes([1]) * 32), users=[SigningKey(bytes([2]) * 32)])

    service.upload_keys("alice", private, MASTER)

    last = _ServiceHandler.last
    assert last["components"] == ["keys", "alice"]
    uploaded = public_keyset_from_dict(json.loads(last["body"]))
    assert uploaded == private.map(lambda k: k.public_key)
    # Private material never leaves the device.
    assert private.admin.raw_value.encode("ascii") not in last["body"]
    assert _verify_last(MASTER) is VerificationResult.VALID
    assert _verify_last(KEY) is VerificationResult.INVALID


def test_check_key_is_unsigned_and_parses_role(service):
    _ServiceHandler.response = b"viewer"

    assert service.check_key("alice", KEY.public_key) is KeyType.VIEWER

    last = _ServiceHandler.last
    assert last["components"] == ["key", "alice"]
    assert last["query"] == ""
    assert json.loads(last["body"]) == KEY.public_key.raw_value


@pytest.mark.parametrize("response", [b"", b"superuser", b"\xff\xfe", b"admin\n", b" viewer"])
def test_check_key_unusable_answer_is_none(service, response):
    _ServiceHandler.response = response
    assert service.check_key("alice", KEY.public_key) is None


def test_check_key_none_is_a_real_answer(service):
    _ServiceHandler.response = b"none"
    assert service.check_key("alice", KEY.public_key) is KeyType.NONE


def test_empty_screen_time_response_is_a_transport_failure(service):
    with pytest.raises(TransportFailure) as ei:
        service.load_screen_time("alice", 2024, 17, KEY)
    assert ei.value.code == ST_E_INVALID_RESPONSE


@pytest.mark.parametrize("status, retryable", [(401, False), (403, False), (503, True)])
def test_error_status_maps_to_transport_failure(service, status, retryable):
    _ServiceHandler.status = status
    _ServiceHandler.response = b'{"code":"X"}'

    with pytest.raises(TransportFailure) as ei:
        service.put_screen_time(ScreenTimeData(), "alice", 2024, 17, KEY)
    assert ei.value.code == ST_E_HTTP_STATUS
    assert ei.value.status == status
    assert ei.value.retryable is retryable


def test_non_200_success_status_is_still_a_failure(service):
    _ServiceHandler.status = 201
    with pytest.raises(TransportFailure) as ei:
        service.put_screen_time(ScreenTimeData(), "alice", 2024, 17, KEY)
    assert ei.value.status == 201


def test_connection_error_is_retryable_transport_failure():
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()

    client = ScreenTimeClient("http", f"127.0.0.1:{port}", timeout_seconds=1)
    with pytest.raises(TransportFailure) as ei:
        client.send_request("GET", "key", "alice")
    assert ei.value.code == ST_E_TRANSPORT
    assert ei.value.retryable is True


def test_client_config_from_env(monkeypatch):
    monkeypatch.setenv("SCREENTIME_SCHEME", "HTTP")
    monkeypatch.setenv("SCREENTIME_HOST", "example.test:8080")
    monkeypatch.setenv("SCREENTIME_TIMEOUT_SECONDS", "2.5")

    cfg = ClientConfig.from_env()
    assert cfg == ClientConfig(scheme="http", host="example.test:8080", timeout_seconds=2.5)

    client = ScreenTimeClient.from_config(cfg)
    assert client.build_url(["time", "a b"], "x=1") == "http://example.test:8080/time/a%20b?x=1"


def test_client_config_rejects_bad_values(monkeypatch):
    monkeypatch.setenv("SCREENTIME_SCHEME", "ftp")
    with pytest.raises(RuntimeError):
        ClientConfig.from_env()

    monkeypatch.setenv("SCREENTIME_SCHEME", "https")
    monkeypatch.setenv("SCREENTIME_TIMEOUT_SECONDS", "soon")
    with pytest.raises(RuntimeError):
        ClientConfig.from_env()


def test_signed_requests_use_the_client_clock(service):
    _ServiceHandler.response = b'{"available":1,"used":0}'
    fixed = ScreenTimeClient(service.scheme, service.host, timeout_seconds=2, clock=lambda: 1234.5)

    fixed.load_screen_time("alice", 2024, 5, KEY)

    last = _ServiceHandler.last
    envelope = SignatureData.from_query(last["query"])
    assert envelope.timestamp == 1234.5
    components = [last["method"], *last["components"]]
    result = verify_signature(components, None, envelope, [KEY.public_key], clock=lambda: 1235.0)
    assert result is VerificationResult.VALID
