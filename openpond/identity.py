"""
Identity management for owned OpenPond agents.
Handles key parsing, agent id derivation, and request signatures.
"""

import re
import time
import base64
import binascii
import hashlib
import logging
from dataclasses import dataclass
from typing import Tuple

from nacl.signing import SigningKey, VerifyKey
from nacl.exceptions import BadSignatureError

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

KEY_PREFIX = 'ed25519:'
_HEX_KEY = re.compile(r'^(0x)?[0-9a-fA-F]{64}$')
BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
AGENT_ID_BYTES = 20


def _b58encode(raw: bytes) -> str:
    n = int.from_bytes(raw, 'big')
    digits = []
    while n:
        n, remainder = divmod(n, 58)
        digits.append(BASE58_ALPHABET[remainder])
    # each leading zero byte is written as the zero digit
    zeros = len(raw) - len(raw.lstrip(b'\0'))
    return BASE58_ALPHABET[0] * zeros + ''.join(reversed(digits))


def derive_agent_id(public_key: bytes) -> str:
    """Agent id for an Ed25519 public key: base58(sha256(key)[:20])."""
    return _b58encode(hashlib.sha256(public_key).digest()[:AGENT_ID_BYTES])


def parse_private_key(private_key: str) -> bytes:
    """
    Decode a private key string into a 32-byte Ed25519 seed.

    Accepts hex (optionally 0x-prefixed) or base64, with or without the
    `ed25519:` type prefix. A 64-byte base64 secret key keeps its seed half.
    """
    key = private_key.strip()
    if key.startswith(KEY_PREFIX):
        key = key[len(KEY_PREFIX):]

    if _HEX_KEY.match(key):
        return bytes.fromhex(key[2:] if key.startswith('0x') else key)

    try:
        raw = base64.b64decode(key, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError(f"Unparseable private key: {e}") from e

    if len(raw) == 32:
        return raw
    if len(raw) == 64:
        return raw[:32]
    raise ConfigurationError(
        f"Private key must decode to 32 or 64 bytes, got {len(raw)}"
    )


@dataclass
class Identity:
    """Signing identity of an agent running in owned-identity mode."""

    signing_private_key: SigningKey
    signing_public_key: VerifyKey
    agent_id: str

    @classmethod
    def generate(cls) -> "Identity":
        """Generate a fresh identity."""
        signing_private = SigningKey.generate()
        return cls(
            signing_private_key=signing_private,
            signing_public_key=signing_private.verify_key,
            agent_id=derive_agent_id(bytes(signing_private.verify_key)),
        )

    @classmethod
    def from_private_key(cls, private_key: str) -> "Identity":
        """Build an identity from a configured private key string."""
        signing_private = SigningKey(parse_private_key(private_key))
        return cls(
            signing_private_key=signing_private,
            signing_public_key=signing_private.verify_key,
            agent_id=derive_agent_id(bytes(signing_private.verify_key)),
        )

    @property
    def private_key_hex(self) -> str:
        """Seed as hex, suitable for `OpenPondConfig.private_key`."""
        return bytes(self.signing_private_key).hex()

    @property
    def public_key_b64(self) -> str:
        """Get public key as base64 with type prefix."""
        return KEY_PREFIX + base64.b64encode(bytes(self.signing_public_key)).decode()

    def sign(self, message: bytes) -> bytes:
        """Sign a message with the signing key."""
        return self.signing_private_key.sign(message).signature

    def sign_b64(self, message: bytes) -> str:
        """Sign a message and return base64-encoded signature."""
        return base64.b64encode(self.sign(message)).decode()

    def sign_timestamp(self) -> Tuple[int, str]:
        """Sign the current epoch-millisecond timestamp for request headers."""
        now_ms = int(time.time() * 1000)
        return now_ms, self.sign_b64(str(now_ms).encode())

    @staticmethod
    def verify_signature(
        public_key_b64: str,
        message: bytes,
        signature_b64: str
    ) -> bool:
        """Verify a signature. Accepts public keys with or without type prefix."""
        key_b64 = public_key_b64
        if key_b64.startswith(KEY_PREFIX):
            key_b64 = key_b64[len(KEY_PREFIX):]

        try:
            public_key = VerifyKey(base64.b64decode(key_b64))
            public_key.verify(message, base64.b64decode(signature_b64))
            return True
        except (BadSignatureError, binascii.Error, ValueError) as e:
            logger.debug(f"Signature verification failed: {e}")
            return False
