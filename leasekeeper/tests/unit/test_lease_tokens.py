from __future__ import annotations

import base64
import json

import pytest

from leasekeeper.core import clock
from leasekeeper.core.errors import LicenseError
from leasekeeper.services.tokens import LeaseTokenCodec


NOW_S = 1_700_000_000


@pytest.fixture
def frozen_clock(monkeypatch):
    monkeypatch.setattr(clock, "now_ms", lambda: NOW_S * 1000)


def _segment(value: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(value).encode("utf-8")).decode("ascii").rstrip("=")


def test_sign_then_verify_returns_payload(frozen_clock) -> None:
    codec = LeaseTokenCodec("s3cret")
    token = codec.sign({"jti": "lease-1", "exp": NOW_S + 60, "module": "winsible"})
    assert token.count(".") == 2
    payload = codec.verify(token)
    assert payload["jti"] == "lease-1"
    assert payload["module"] == "winsible"


def test_tampered_payload_is_unauthorized(frozen_clock) -> None:
    codec = LeaseTokenCodec("s3cret")
    header, _payload, signature = codec.sign({"jti": "lease-1", "exp": NOW_S + 60}).split(".")
    forged = f"{header}.{_segment({'jti': 'lease-2', 'exp': NOW_S + 60})}.{signature}"
    with pytest.raises(LicenseError) as excinfo:
        codec.verify(forged)
    assert excinfo.value.status == 401
    assert excinfo.value.code == "UNAUTHORIZED"


def test_other_secret_is_unauthorized(frozen_clock) -> None:
    token = LeaseTokenCodec("one").sign({"jti": "lease-1", "exp": NOW_S + 60})
    with pytest.raises(LicenseError) as excinfo:
        LeaseTokenCodec("two").verify(token)
    assert excinfo.value.code == "UNAUTHORIZED"


def test_expired_token_is_conflict_not_unauthorized(frozen_clock) -> None:
    codec = LeaseTokenCodec("s3cret")
    token = codec.sign({"jti": "lease-1", "exp": NOW_S})
    with pytest.raises(LicenseError) as excinfo:
        codec.verify(token)
    assert excinfo.value.status == 409
    assert excinfo.value.code == "LEASE_EXPIRED"


@pytest.mark.parametrize("claims", [{}, {"exp": "soon"}, {"exp": True}, {"exp": None}])
def test_missing_or_non_numeric_exp_is_unauthorized(frozen_clock, claims) -> None:
    codec = LeaseTokenCodec("s3cret")
    with pytest.raises(LicenseError) as excinfo:
        codec.verify(codec.sign({"jti": "lease-1", **claims}))
    assert excinfo.value.status == 401
    assert excinfo.value.code == "UNAUTHORIZED"


@pytest.mark.parametrize("token", [None, "", "   ", "a.b", "a.b.c.d"])
def test_malformed_tokens_are_unauthorized(token) -> None:
    with pytest.raises(LicenseError) as excinfo:
        LeaseTokenCodec("s3cret").verify(token)
    assert excinfo.value.status == 401


def test_foreign_algorithm_is_rejected(frozen_clock) -> None:
    codec = LeaseTokenCodec("s3cret")
    header = _segment({"alg": "none", "typ": "JWT"})
    payload = _segment({"jti": "lease-1", "exp": NOW_S + 60})
    signature = codec._signature(f"{header}.{payload}")
    with pytest.raises(LicenseError) as excinfo:
        codec.verify(f"{header}.{payload}.{signature}")
    assert excinfo.value.code == "UNAUTHORIZED"


@pytest.mark.parametrize("secret", [None, "", "  "])
def test_missing_secret_is_config_error(secret) -> None:
    with pytest.raises(LicenseError) as excinfo:
        LeaseTokenCodec(secret)
    assert excinfo.value.status == 500
    assert excinfo.value.code == "CONFIG_ERROR"


def _flip(char: str) -> str:
    return "A" if char != "A" else "B"


def test_any_mutated_signature_character_is_unauthorized(frozen_clock) -> None:
    codec = LeaseTokenCodec("s3cret")
    header, payload, signature = codec.sign({"jti": "lease-1", "exp": NOW_S + 60}).split(".")
    for index in range(len(signature)):
        mutated = signature[:index] + _flip(signature[index]) + signature[index + 1 :]
        with pytest.raises(LicenseError) as excinfo:
            codec.verify(f"{header}.{payload}.{mutated}")
        assert excinfo.value.code == "UNAUTHORIZED", index


def test_truncated_or_extended_signature_is_unauthorized(frozen_clock) -> None:
    codec = LeaseTokenCodec("s3cret")
    header, payload, signature = codec.sign({"jti": "lease-1", "exp": NOW_S + 60}).split(".")
    for variant in (signature[:-1], signature + "=", signature + signature[-1], ""):
        with pytest.raises(LicenseError) as excinfo:
            codec.verify(f"{header}.{payload}.{variant}")
        assert excinfo.value.code == "UNAUTHORIZED"
