import base64
import os
import stat

import pytest

from screentime_gateway.crypto import (
    SigningKey,
    VerifyKey,
    generate_key_file,
    load_signing_key,
    load_signing_key_from_env,
    load_signing_key_from_file,
)
from screentime_gateway.errors import KeyFormatError, ST_E_KEY_FORMAT


def test_raw_value_round_trip_for_both_key_kinds():
    private = SigningKey(bytes([7]) * 32)
    assert SigningKey.from_raw_value(private.raw_value) == private

    public = private.public_key
    assert VerifyKey.from_raw_value(public.raw_value) == public
    assert len(base64.b64decode(public.raw_value)) == 32


def test_generated_keys_are_distinct():
    a = SigningKey.generate()
    b = SigningKey.generate()
    assert a != b
    assert a.public_key != b.public_key


def test_malformed_base64_is_rejected():
    with pytest.raises(KeyFormatError) as ei:
        VerifyKey.from_raw_value("not base64 at all!")
    assert ei.value.code == ST_E_KEY_FORMAT


@pytest.mark.parametrize("length", [0, 31, 33, 64])
def test_wrong_raw_length_is_rejected_not_truncated(length):
    raw_value = base64.b64encode(b"\x01" * length).decode("ascii")
    with pytest.raises(KeyFormatError):
        SigningKey.from_raw_value(raw_value)
    with pytest.raises(KeyFormatError):
        VerifyKey.from_raw_value(raw_value)


def test_verify_rejects_wrong_signature_length():
    key = SigningKey(bytes([1]) * 32)
    sig = key.sign(b"hello")
    assert key.public_key.verify(b"hello", sig)
    assert not key.public_key.verify(b"hello", sig[:-1])
    assert not key.public_key.verify(b"hello!", sig)


def test_repr_does_not_leak_private_material():
    key = SigningKey(bytes([9]) * 32)
    assert key.raw_value not in repr(key)
    assert key.public_key.raw_value in repr(key)


def test_keys_are_hashable_values():
    key = SigningKey(bytes([3]) * 32)
    assert {key.public_key, SigningKey(bytes([3]) * 32).public_key} == {key.public_key}


def test_load_signing_key_from_env(monkeypatch):
    monkeypatch.delenv("SCREENTIME_MASTER_KEY", raising=False)
    assert load_signing_key_from_env() is None

    key = SigningKey(bytes([5]) * 32)
    monkeypatch.setenv("SCREENTIME_MASTER_KEY", key.raw_value)
    assert load_signing_key_from_env() == key


def test_load_signing_key_from_env_fails_on_malformed_value(monkeypatch):
    monkeypatch.setenv("SCREENTIME_MASTER_KEY", "AAAA")
    with pytest.raises(KeyFormatError):
        load_signing_key_from_env()


def test_generate_key_file_is_private_and_loadable(tmp_path):
    path = tmp_path / "master.key"
    key = generate_key_file(str(path))

    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert load_signing_key_from_file(str(path)) == key


def test_key_file_with_loose_permissions_is_rejected(tmp_path):
    path = tmp_path / "master.key"
    generate_key_file(str(path))
    os.chmod(path, 0o644)

    with pytest.raises(KeyFormatError) as ei:
        load_signing_key_from_file(str(path))
    assert "chmod 600" in ei.value.message

    # Permission checks can be disabled explicitly.
    assert load_signing_key_from_file(str(path), require_strict_permissions=False) is not None


def test_missing_key_file_returns_none(tmp_path):
    assert load_signing_key_from_file(str(tmp_path / "absent.key")) is None


def test_load_signing_key_prefers_env(monkeypatch, tmp_path):
    path = tmp_path / "file.key"
    file_key = generate_key_file(str(path))
    env_key = SigningKey(bytes([8]) * 32)

    monkeypatch.setenv("SCREENTIME_MASTER_KEY", env_key.raw_value)
    assert load_signing_key(file_path=str(path)) == env_key

    monkeypatch.delenv("SCREENTIME_MASTER_KEY")
    assert load_signing_key(file_path=str(path)) == file_key
