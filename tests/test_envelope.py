import base64

import pytest

from screentime_gateway.crypto import SigningKey
from screentime_gateway.envelope import SignatureData, format_timestamp
from screentime_gateway.errors import EncodingFailure
from screentime_gateway.signing import sign_request


def test_timestamp_uses_shortest_decimal_form():
    assert format_timestamp(1700000000) == "1700000000.0"
    assert format_timestamp(1700000000.25) == "1700000000.25"


def test_query_form_is_url_safe():
    # 0xfb 0xff produces '+' and '/' in standard base64.
    env = SignatureData(timestamp=1700000000.0, signature=b"\xfb\xff" * 32)
    query = env.to_query()
    assert query.startswith("timestamp=1700000000.0&signature=")
    assert "+" not in query and "/" not in query
    assert SignatureData.from_query(query) == env


def test_query_accepts_standard_alphabet_and_form_spaces():
    sig = b"\xfb\xff" * 32
    std = base64.b64encode(sig).decode("ascii")
    # Form decoding turns an unescaped '+' into a space.
    query = "timestamp=12.5&signature=" + std.replace("+", " ")
    assert SignatureData.from_query(query) == SignatureData(timestamp=12.5, signature=sig)


def test_query_ignores_unrelated_parameters():
    env = sign_request(["GET"], None, SigningKey(bytes([1]) * 32), clock=lambda: 5.0)
    assert SignatureData.from_query("x=1&" + env.to_query()) == env


@pytest.mark.parametrize(
    "query",
    [
        "",
        "timestamp=1.0",
        "signature=AAAA",
        "timestamp=abc&signature=AAAA",
        "timestamp=nan&signature=AAAA",
        "timestamp=1.0&signature=%%%",
        "timestamp=1.0&timestamp=2.0&signature=AAAA",
    ],
)
def test_malformed_query_raises_encoding_failure(query):
    with pytest.raises(EncodingFailure):
        SignatureData.from_query(query)


def test_dict_form_uses_standard_base64():
    env = SignatureData(timestamp=3.0, signature=b"\xfb\xff" * 32)
    d = env.to_dict()
    assert d["signature"] == base64.b64encode(env.signature).decode("ascii")
    assert SignatureData.from_dict(d) == env


def test_dict_form_requires_string_signature():
    with pytest.raises(EncodingFailure):
        SignatureData.from_dict({"timestamp": 1.0, "signature": 123})
