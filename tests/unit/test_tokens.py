"""Tests for worker and run token validation."""

import time

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from runwire.config import TokenConfig
from runwire.errors import Unauthorized
from runwire.security import TokenAuthority

SECRET = "unit-test-secret-0123456789abcdef0123"


def authority(**overrides):
    return TokenAuthority(TokenConfig(secret=SECRET, **overrides))


def test_run_token_round_trip():
    tokens = authority()
    token = tokens.generate_run_token("run-a", ttl_seconds=60)
    claims = tokens.verify_run_token(token, "run-a")
    assert claims["id"] == "run-a"
    assert claims["exp"] - claims["nbf"] == 60


def test_run_token_for_other_run_is_unauthorized():
    tokens = authority()
    token = tokens.generate_run_token("run-a", ttl_seconds=60)
    with pytest.raises(Unauthorized):
        tokens.verify_run_token(token, "run-b")


def test_run_token_time_window():
    tokens = authority()
    now = time.time()
    future = tokens.generate_run_token("run-a", ttl_seconds=60, not_before=now + 30)
    with pytest.raises(Unauthorized):
        tokens.verify_run_token(future, "run-a", now=now)
    assert tokens.verify_run_token(future, "run-a", now=now + 31)["id"] == "run-a"

    with pytest.raises(Unauthorized):
        tokens.verify_run_token(future, "run-a", now=now + 91)


def test_tampered_and_malformed_tokens():
    tokens = authority()
    other = TokenAuthority(TokenConfig(secret="another-secret-0123456789abcdef0123"))
    forged = other.generate_run_token("run-a", ttl_seconds=60)

    for token in (forged, "not-a-jwt", ""):
        with pytest.raises(Unauthorized) as exc_info:
            tokens.verify_run_token(token, "run-a")
        assert exc_info.value.to_reply() == {"reason": "unauthorized"}


def test_run_token_without_expiry_is_rejected():
    tokens = authority()
    token = jwt.encode({"id": "run-a", "nbf": int(time.time())}, SECRET, algorithm="HS256")
    with pytest.raises(Unauthorized):
        tokens.verify_run_token(token, "run-a")


def test_worker_token():
    tokens = authority()
    token = tokens.generate_worker_token("worker-7")
    claims = tokens.verify_worker_token(token)
    assert claims["sub"] == "worker-7"
    assert claims["iss"] == "runwire"
    assert "exp" not in claims

    expiring = tokens.generate_worker_token("worker-7", ttl_seconds=10, now=1_000)
    with pytest.raises(Unauthorized):
        tokens.verify_worker_token(expiring, now=1_011)


def test_run_token_does_not_open_socket():
    tokens = authority()
    with pytest.raises(Unauthorized):
        tokens.verify_worker_token(tokens.generate_run_token("run-a", ttl_seconds=60))


def test_run_token_ttl_adds_grace():
    tokens = authority(run_token_grace_seconds=30)
    assert tokens.run_token_ttl(300_000) == 330


def test_hs256_requires_secret():
    with pytest.raises(ValueError):
        TokenAuthority(TokenConfig())


def test_rs256_key_pair(tmp_path):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_path = tmp_path / "private.pem"
    public_path = tmp_path / "public.pem"
    private_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    public_path.write_bytes(
        key.public_key().public_bytes(
            serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
        )
    )

    tokens = TokenAuthority(
        TokenConfig(
            algorithm="RS256",
            private_key_path=str(private_path),
            public_key_path=str(public_path),
        )
    )
    token = tokens.generate_run_token("run-a", ttl_seconds=60)
    assert tokens.verify_run_token(token, "run-a")["id"] == "run-a"
    with pytest.raises(Unauthorized):
        authority().verify_run_token(token, "run-a")
