"""Tests for JWT expiration validation in the Slurm REST API client."""

import base64
import json
import time

import pytest

from slurm_dashboard.slurmrestapi import client


def _make_jwt(payload: dict, header: dict | None = None) -> str:
    """Build a minimal unsigned JWT string from a payload dict."""
    header = header or {"alg": "HS256", "typ": "JWT"}
    h = base64.urlsafe_b64encode(json.dumps(header).encode()).rstrip(b"=").decode()
    p = base64.urlsafe_b64encode(json.dumps(payload).encode()).rstrip(b"=").decode()
    return f"{h}.{p}.fakesignature"


# ---------------------------------------------------------------------------
# validate_jwt_not_expired
# ---------------------------------------------------------------------------


def test_validate_jwt_valid_token_does_not_raise():
    token = _make_jwt({"exp": int(time.time()) + 3600})
    client.validate_jwt_not_expired(token)


def test_validate_jwt_expired_token_raises():
    token = _make_jwt({"exp": int(time.time()) - 60})
    with pytest.raises(client.ExpiredTokenError, match="expired"):
        client.validate_jwt_not_expired(token)


def test_validate_jwt_non_jwt_string_is_skipped():
    """Opaque tokens from older slurmrestd setups are accepted."""
    client.validate_jwt_not_expired("not-a-jwt-token")


def test_validate_jwt_no_exp_claim_is_skipped():
    token = _make_jwt({"sub": "dashboard"})
    client.validate_jwt_not_expired(token)


def test_validate_jwt_invalid_base64_payload_is_skipped():
    client.validate_jwt_not_expired("header.!!!invalid!!!.signature")


# ---------------------------------------------------------------------------
# SlurmRestApiClient construction
# ---------------------------------------------------------------------------


def test_client_init_raises_on_expired_inline_token():
    token = _make_jwt({"exp": int(time.time()) - 60})

    with pytest.raises(client.ExpiredTokenError):
        client.SlurmRestApiClient(base_url="http://localhost:6820", token=token)


def test_client_init_raises_on_expired_token_file(tmp_path):
    token_file = tmp_path / "token"
    token_file.write_text(_make_jwt({"exp": int(time.time()) - 60}))

    with pytest.raises(client.ExpiredTokenError):
        client.SlurmRestApiClient(
            base_url="http://localhost:6820",
            token_file=str(token_file),
        )


def test_client_init_missing_token_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        client.SlurmRestApiClient(
            base_url="http://localhost:6820",
            token_file=str(tmp_path / "missing"),
        )


def test_client_init_rejects_empty_base_url():
    with pytest.raises(ValueError, match="base_url"):
        client.SlurmRestApiClient(base_url="")
