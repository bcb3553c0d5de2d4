"""Code signing for served manifests.

Signatures are RSA / SHA-256 / PKCS#1 v1.5 over the exact manifest body bytes,
base64 encoded. PKCS#1 v1.5 signing has no random salt, so a given key and
payload always produce the same signature.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from pathlib import Path

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from updates_harness.errors import KeyLoadError, SigningError
from updates_harness.structured_headers import dictionary_from_strings, serialize_dictionary

logger = logging.getLogger(__name__)

DEFAULT_KEY_ID = "main"


def _as_bytes(data: str | bytes) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else bytes(data)


def load_private_key_pem(path: str | Path) -> str:
    key_path = Path(path)
    try:
        pem = key_path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise KeyLoadError(f"private key not found: {key_path}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise KeyLoadError(f"private key unreadable: {key_path}: {e}") from e
    if "PRIVATE KEY-----" not in pem:
        raise KeyLoadError(f"not a PEM private key: {key_path}")
    return pem


async def read_private_key_pem_async(path: str | Path) -> str:
    return await asyncio.to_thread(load_private_key_pem, path)


def _load_rsa_private_key(private_key_pem: str) -> rsa.RSAPrivateKey:
    try:
        key = serialization.load_pem_private_key(_as_bytes(private_key_pem), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise KeyLoadError(f"malformed private key: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise SigningError(f"expected an RSA private key, got {type(key).__name__}")
    return key


def sign_rsa_sha256(data: str | bytes, private_key_pem: str) -> str:
    """Sign `data` (utf-8 when given as str) and return a base64 signature."""

    key = _load_rsa_private_key(private_key_pem)
    try:
        sig = key.sign(_as_bytes(data), padding.PKCS1v15(), hashes.SHA256())
    except (ValueError, TypeError) as e:
        raise SigningError(f"RSA-SHA256 signing failed: {e}") from e
    return base64.b64encode(sig).decode("ascii")


def verify_rsa_sha256(data: str | bytes, signature_b64: str, public_key_pem: str) -> bool:
    try:
        pub = serialization.load_pem_public_key(_as_bytes(public_key_pem))
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise KeyLoadError(f"malformed public key: {e}") from e
    if not isinstance(pub, rsa.RSAPublicKey):
        raise SigningError(f"expected an RSA public key, got {type(pub).__name__}")
    try:
        sig = base64.b64decode(signature_b64, validate=True)
        pub.verify(sig, _as_bytes(data), padding.PKCS1v15(), hashes.SHA256())
    except (InvalidSignature, binascii.Error):
        return False
    return True


def public_key_pem_from_private(private_key_pem: str) -> str:
    key = _load_rsa_private_key(private_key_pem)
    return (
        key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("ascii")
    )


def generate_private_key_pem(key_size: int = 2048) -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def build_signature_header(sig: str, key_id: str = DEFAULT_KEY_ID) -> str:
    """Encode `{sig, keyid}` as the `expo-signature` structured dictionary."""

    return serialize_dictionary(dictionary_from_strings({"sig": sig, "keyid": key_id}))


def signed_manifest_headers(
    body: str | bytes, private_key_pem: str, *, key_id: str = DEFAULT_KEY_ID
) -> dict[str, str]:
    """Headers that accompany a signed manifest body (protocol version 0)."""

    sig = sign_rsa_sha256(body, private_key_pem)
    logger.debug("signed manifest body (%d bytes) with keyid=%s", len(_as_bytes(body)), key_id)
    return {
        "expo-protocol-version": "0",
        "expo-signature": build_signature_header(sig, key_id),
    }
