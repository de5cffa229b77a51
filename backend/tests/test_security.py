"""Tests for secret hashing, token signer configuration and admin Basic auth."""
from __future__ import annotations

import base64
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi.testclient import TestClient

from keygate.core.config import Settings, get_settings
from keygate.main import app
from keygate.security import SecretHasher, get_token_signer


def _basic_auth(username: str, password: str) -> dict[str, str]:
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


def _write_ec_key_pair(directory: Path) -> tuple[Path, Path]:
    private_key = ec.generate_private_key(ec.SECP256R1())
    private_path = directory / "jwt-private.pem"
    public_path = directory / "jwt-public.pem"
    private_path.write_bytes(
        private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    public_path.write_bytes(
        private_key.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )
    return private_path, public_path


def test_needs_rehash_tracks_cost_parameters() -> None:
    weak = SecretHasher(n=2**4, r=8, p=1)
    strong = SecretHasher(n=2**5, r=8, p=1)
    encoded = weak.hash("hunter2hunter2")

    assert not weak.needs_rehash(encoded)
    assert strong.needs_rehash(encoded)
    assert strong.needs_rehash("pbkdf2_sha256$1$x$y")
    # verification always uses the parameters stored in the hash
    assert strong.verify("hunter2hunter2", encoded)
    assert not strong.verify("wrong", encoded)


def test_signer_reads_key_files_once(tmp_path: Path) -> None:
    private_path, public_path = _write_ec_key_pair(tmp_path)
    settings = Settings(
        jwt_algorithm="ES256",
        jwt_private_key_path=str(private_path),
        jwt_public_key_path=str(public_path),
    )

    signer = get_token_signer(settings)
    private_path.unlink()
    public_path.unlink()

    assert get_token_signer(settings) is signer
    token = signer.issue_owner_token("a" * 32, ["keys:read"])
    assert signer.decode(token, typ="owner")["owner_id"] == "a" * 32


def test_admin_accepts_configured_scrypt_hash(client: TestClient, api_settings: Settings) -> None:
    configured = api_settings.model_copy(
        update={
            "auth_basic_password_plain": None,
            "auth_basic_password_hash": SecretHasher(n=2**4).hash("s3cret-admin"),
        }
    )
    app.dependency_overrides[get_settings] = lambda: configured

    ok = client.get("/api/admin/audit-events", headers=_basic_auth("admin", "s3cret-admin"))
    assert ok.status_code == 200

    denied = client.get("/api/admin/audit-events", headers=_basic_auth("admin", "secret"))
    assert denied.status_code == 401
    assert denied.headers["WWW-Authenticate"].startswith("Basic")
