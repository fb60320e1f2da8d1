import importlib


def _read_pyproject_version() -> str:
    import re
    from pathlib import Path

    txt = (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    assert m, "Could not locate [project].version in pyproject.toml"
    return m.group(1)


def test_convenience_imports_work():
    import screentime_gateway

    # Access via attribute (lazy import)
    assert hasattr(screentime_gateway, "ScreenTimeClient")
    assert hasattr(screentime_gateway, "create_app")

    from screentime_gateway import KeySet, KeyType, SigningKey, VerifyKey  # noqa: F401
    from screentime_gateway import RequestSigner, resolve_role, verify_signature  # noqa: F401

    assert "create_app" in dir(screentime_gateway)
    importlib.reload(screentime_gateway)


def test_unknown_attribute_raises():
    import pytest

    import screentime_gateway

    with pytest.raises(AttributeError):
        screentime_gateway.NotAThing  # noqa: B018


def test_version_export_matches_pyproject():
    import screentime_gateway

    assert screentime_gateway.__version__ == _read_pyproject_version()
