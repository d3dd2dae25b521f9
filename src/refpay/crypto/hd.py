"""
SLIP-0010 hierarchical derivation over ed25519 (Solana's signing curve).

ed25519 only supports hardened children, so every path segment is hardened
whether or not it carries a trailing apostrophe. Non-numeric segments (user
ids) map to the first 31 bits of their SHA-256 digest.
"""

import hashlib
import hmac

from solders.keypair import Keypair  # type: ignore

HARDENED_OFFSET = 0x80000000
ED25519_SEED_KEY = b"ed25519 seed"


def generate_user_seed(master_secret: str, user_id: str) -> bytes:
    """Per-user master seed; cannot be recomputed from user_id without the secret."""
    return hmac.new(master_secret.encode(), user_id.encode(), hashlib.sha256).digest()


def build_path(prefix: str, user_id: str, counter: int) -> str:
    return f"{prefix}/{user_id}/0/{counter}"


def segment_index(segment: str) -> int:
    """Maps one path segment to its hardened child index."""
    raw = segment[:-1] if segment.endswith("'") else segment
    if not raw:
        raise ValueError("Empty derivation path segment")
    if raw.isdigit():
        index = int(raw)
        if index >= HARDENED_OFFSET:
            raise ValueError(f"Derivation index out of range: {raw}")
    else:
        index = int.from_bytes(hashlib.sha256(raw.encode()).digest()[:4], "big")
        index &= HARDENED_OFFSET - 1
    return index + HARDENED_OFFSET


def parse_path(path: str) -> list[int]:
    segments = path.split("/")
    if segments[0] != "m":
        raise ValueError(f"Derivation path must start with 'm': {path}")
    return [segment_index(s) for s in segments[1:]]


def derive_private_key(seed: bytes, path: str) -> bytes:
    """Returns the 32-byte ed25519 private key seed at ``path``."""
    digest = hmac.new(ED25519_SEED_KEY, seed, hashlib.sha512).digest()
    key, chain_code = digest[:32], digest[32:]
    for index in parse_path(path):
        data = b"\x00" + key + index.to_bytes(4, "big")
        digest = hmac.new(chain_code, data, hashlib.sha512).digest()
        key, chain_code = digest[:32], digest[32:]
    return key


def derive_keypair(seed: bytes, path: str) -> Keypair:
    return Keypair.from_seed(derive_private_key(seed, path))
