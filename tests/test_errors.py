from screentime_gateway.errors import (
    ST_E_ENCODING,
    ST_E_HTTP_STATUS,
    ST_E_ROLE_FORBIDDEN,
    AuthorizationError,
    EncodingFailure,
    ScreenTimeError,
    SigningFailure,
    TransportFailure,
    st_error,
)


def test_factory_picks_subclass_by_code():
    assert isinstance(st_error(ST_E_ENCODING, "x"), EncodingFailure)
    assert isinstance(st_error(ST_E_ENCODING, "x"), SigningFailure)
    assert isinstance(st_error(ST_E_HTTP_STATUS, "x"), TransportFailure)
    assert isinstance(st_error(ST_E_ROLE_FORBIDDEN, "x"), AuthorizationError)
    assert type(st_error("ST_E_SOMETHING_NEW", "x")) is ScreenTimeError


def test_error_envelope_is_stable():
    err = st_error(ST_E_HTTP_STATUS, "HTTP 503", retryable=True, http_status=502, status=503)
    assert err.as_dict() == {
        "code": ST_E_HTTP_STATUS,
        "message": "HTTP 503",
        "retryable": True,
        "http_status": 502,
        "details": {"status": 503},
    }
    assert err.status == 503
    assert str(err) == "ST_E_HTTP_STATUS: HTTP 503"


def test_details_are_omitted_when_empty():
    assert "details" not in st_error(ST_E_ENCODING, "bad").as_dict()
