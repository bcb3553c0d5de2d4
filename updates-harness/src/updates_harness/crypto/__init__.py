from __future__ import annotations

from updates_harness.crypto.signing import (
    DEFAULT_KEY_ID,
    build_signature_header,
    generate_private_key_pem,
    load_private_key_pem,
    public_key_pem_from_private,
    read_private_key_pem_async,
    sign_rsa_sha256,
    signed_manifest_headers,
    verify_rsa_sha256,
)

__all__ = [
    "DEFAULT_KEY_ID",
    "build_signature_header",
    "generate_private_key_pem",
    "load_private_key_pem",
    "public_key_pem_from_private",
    "read_private_key_pem_async",
    "sign_rsa_sha256",
    "signed_manifest_headers",
    "verify_rsa_sha256",
]
