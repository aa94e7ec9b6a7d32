"""Ed25519 ``did:key`` identities for signed property deeds.

A notary signs the sha256 hex digest of a deed document; the oracle relays
the digest, the base64url signature and the signer's ``did:key``. Verifying
a deed means:

1. sha256(document) == attributes.documentHash
2. attributes.signer == the did:key trusted for the payload issuer
3. signature verifies over the UTF-8 bytes of documentHash
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from assetgate.core import sha256_bytes
from assetgate.errors import SignatureInvalid
from assetgate.hardening import secure_compare_str

# Base58 (bitcoin alphabet), as used by multibase "z" prefixes.
B58_ALPHABET = b"123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
B58_MAP = {c: i for i, c in enumerate(B58_ALPHABET)}

ED25519_MULTICODEC = bytes([0xED, 0x01])


def b58decode(s: str) -> bytes:
    s_bytes = s.encode("ascii")
    num = 0
    for c in s_bytes:
        if c not in B58_MAP:
            raise ValueError("Invalid base58 character")
        num = num * 58 + B58_MAP[c]
    n_pad = len(s_bytes) - len(s_bytes.lstrip(B58_ALPHABET[:1]))
    full = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\x00" * n_pad + full


def b58encode(b: bytes) -> str:
    n_pad = len(b) - len(b.lstrip(b"\x00"))
    num = int.from_bytes(b, "big")
    out = bytearray()
    while num > 0:
        num, rem = divmod(num, 58)
        out.append(B58_ALPHABET[rem])
    out.extend(B58_ALPHABET[0] for _ in range(n_pad))
    out.reverse()
    return out.decode("ascii")


def b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    pad = "=" * ((4 - len(s) % 4) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


def did_key_from_ed25519_public_key(pub: bytes) -> str:
    return "did:key:z" + b58encode(ED25519_MULTICODEC + pub)


def ed25519_public_key_from_did_key(did: str) -> Ed25519PublicKey:
    """Parse an Ed25519 ``did:key`` (fragment allowed) into a public key."""
    did = did.split("#", 1)[0]
    if not did.startswith("did:key:z"):
        raise ValueError("Only did:key:z... supported")
    decoded = b58decode(did[len("did:key:z"):])
    if not decoded.startswith(ED25519_MULTICODEC):
        raise ValueError("did:key multicodec prefix not recognized for Ed25519")
    raw = decoded[len(ED25519_MULTICODEC):]
    if len(raw) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(raw)}")
    return Ed25519PublicKey.from_public_bytes(raw)


@dataclass
class DeedSigner:
    """A notary key that signs deed document digests."""
    private_key: Ed25519PrivateKey

    @classmethod
    def generate(cls) -> "DeedSigner":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_jwk(cls, jwk: Mapping[str, Any]) -> "DeedSigner":
        if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519" or not jwk.get("d"):
            raise ValueError("Only private OKP/Ed25519 JWK is supported")
        return cls(Ed25519PrivateKey.from_private_bytes(b64url_decode(jwk["d"])))

    @property
    def public_bytes(self) -> bytes:
        return self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    @property
    def did(self) -> str:
        return did_key_from_ed25519_public_key(self.public_bytes)

    def to_jwk(self) -> Dict[str, str]:
        d = self.private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return {"kty": "OKP", "crv": "Ed25519", "x": b64url_encode(self.public_bytes), "d": b64url_encode(d)}

    def sign_document_hash(self, document_hash: str) -> str:
        return b64url_encode(self.private_key.sign(document_hash.encode("utf-8")))

    def sign_document(self, document: bytes) -> Dict[str, str]:
        """Attributes a deed payload carries for ``document``."""
        digest = sha256_bytes(document)
        return {"documentHash": digest, "signature": self.sign_document_hash(digest), "signer": self.did}


def verify_document_signature(did: str, document_hash: str, signature: str) -> bool:
    try:
        public_key = ed25519_public_key_from_did_key(did)
        public_key.verify(b64url_decode(signature), document_hash.encode("utf-8"))
    except (InvalidSignature, ValueError):
        return False
    return True


def check_signed_document(
    document: bytes,
    attributes: Mapping[str, Any],
    issuer: Optional[str],
    trusted_signers: Mapping[str, str],
) -> str:
    """
    Verify a deed document against the signature fields of a payload.

    Returns the verified document hash.

    Raises:
        SignatureInvalid: any of the three checks fails.
    """
    claimed = str(attributes.get("documentHash") or "")
    actual = sha256_bytes(document)
    if not claimed or not secure_compare_str(actual, claimed):
        raise SignatureInvalid(f"document hash mismatch: certificate is {actual}, payload claims {claimed or '(none)'}")

    expected_signer = trusted_signers.get(issuer or "")
    if not expected_signer:
        raise SignatureInvalid(f"no trusted signer registered for issuer '{issuer}'")
    signer = str(attributes.get("signer") or "")
    if signer != expected_signer:
        raise SignatureInvalid(f"document signed by {signer or '(none)'}, expected {expected_signer}")

    if not verify_document_signature(expected_signer, claimed, str(attributes.get("signature") or "")):
        raise SignatureInvalid("signature does not verify against the expected signer")
    return actual
