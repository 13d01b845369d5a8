"""
Session cryptography shared by clients and the compute cluster.

Sessions use X25519 key agreement with the computation network's published
key, HKDF-SHA256 key derivation and AES-GCM authenticated encryption.
"""
import logging
import os
from typing import List, Optional, Sequence, Set

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from tripmatch.shared.codec import bytes_to_fields, fields_to_bytes
from tripmatch.shared.errors import (
    DecryptionFailed,
    KeyAgreementFailed,
    NonceReuse,
    SessionConsumed,
)
from tripmatch.shared.protocol import CipherEnvelope, SealedPayload

logger = logging.getLogger(__name__)

KEY_BYTES = 32
NONCE_BYTES = 16  # u128 nonce, as the circuit's cipher expects

SESSION_INFO = b"tripmatch/mpc-session/v1"
REVEAL_INFO = b"tripmatch/reveal/v1"


class KeyPair:
    """
    X25519 key pair.

    Ephemeral pairs are generated per submission; long-lived pairs (the
    cluster key, a user's reveal key) are loaded from raw private bytes.
    """

    def __init__(self, private_key: X25519PrivateKey):
        self._private_key = private_key
        self.public_key = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    @classmethod
    def generate(cls) -> "KeyPair":
        return cls(X25519PrivateKey.generate())

    @classmethod
    def from_private_bytes(cls, data: bytes) -> "KeyPair":
        try:
            return cls(X25519PrivateKey.from_private_bytes(data))
        except ValueError as e:
            raise KeyAgreementFailed(f"Invalid private key: {e}") from None

    def private_bytes(self) -> bytes:
        """Export raw private key bytes. Handle with care."""
        return self._private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def exchange(self, remote_public_key: bytes) -> bytes:
        """
        Raw X25519 shared secret with a remote public key.

        Raises:
            KeyAgreementFailed: on malformed or low-order remote keys
        """
        try:
            peer = X25519PublicKey.from_public_bytes(bytes(remote_public_key))
            return self._private_key.exchange(peer)
        except (TypeError, ValueError) as e:
            raise KeyAgreementFailed(f"X25519 key agreement failed: {e}") from None


def derive_key(shared_secret: bytes, info: bytes = SESSION_INFO) -> bytes:
    """Derive a 256-bit symmetric key from a raw shared secret."""
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=None,
        info=info,
    ).derive(shared_secret)


class EncryptionSession:
    """
    Symmetric session between one local key pair and a remote public key.

    Single owner, single computation. The session remembers every nonce it
    encrypted under and refuses to use one twice; once handed to a
    submission it is consumed and refuses to encrypt at all.
    """

    def __init__(self, key: bytes, local_public_key: bytes, remote_public_key: bytes):
        self._aead = AESGCM(key)
        self.public_key = local_public_key
        self.remote_public_key = remote_public_key
        self._used_nonces: Set[bytes] = set()
        self._consumed = False

    @classmethod
    def open(
        cls,
        local_key_pair: KeyPair,
        remote_public_key: bytes,
        info: bytes = SESSION_INFO,
    ) -> "EncryptionSession":
        """
        Negotiate a session key.

        Args:
            local_key_pair: Our (usually ephemeral) key pair
            remote_public_key: The peer's 32-byte X25519 public key
            info: HKDF context, separates session keys from reveal keys

        Returns:
            A fresh EncryptionSession
        """
        shared = local_key_pair.exchange(remote_public_key)
        key = derive_key(shared, info)
        logger.debug("[CRYPTO] Session opened with peer %s", bytes(remote_public_key).hex()[:16])
        return cls(key, local_key_pair.public_key, bytes(remote_public_key))

    @property
    def consumed(self) -> bool:
        return self._consumed

    def consume(self) -> None:
        """Mark the session as spent. Further encrypt() calls fail."""
        self._consumed = True

    def encrypt(self, fields: Sequence[int], nonce: Optional[bytes] = None) -> CipherEnvelope:
        """
        Encrypt field elements.

        Args:
            fields: Field elements (each < 2**64)
            nonce: 16-byte nonce; a random one is drawn when omitted

        Returns:
            CipherEnvelope with ciphertext, our public key and the nonce
        """
        if self._consumed:
            raise SessionConsumed("Session was already used for a submission")

        if nonce is None:
            nonce = os.urandom(NONCE_BYTES)
            while nonce in self._used_nonces:
                nonce = os.urandom(NONCE_BYTES)
        nonce = bytes(nonce)
        if len(nonce) != NONCE_BYTES:
            raise ValueError(f"Nonce must be {NONCE_BYTES} bytes, got {len(nonce)}")
        if nonce in self._used_nonces:
            raise NonceReuse("Nonce already used under this session key")

        plaintext = fields_to_bytes(fields)
        self._used_nonces.add(nonce)
        ciphertext = self._aead.encrypt(nonce, plaintext, None)
        return CipherEnvelope(ciphertext=ciphertext, public_key=self.public_key, nonce=nonce)

    def decrypt(self, ciphertext: bytes, nonce: bytes) -> List[int]:
        """
        Decrypt and authenticate a ciphertext.

        Raises:
            DecryptionFailed: on any verification failure; no partial
                plaintext is ever returned
        """
        try:
            plaintext = self._aead.decrypt(bytes(nonce), bytes(ciphertext), None)
        except (InvalidTag, ValueError):
            raise DecryptionFailed("Ciphertext failed authentication") from None
        return bytes_to_fields(plaintext)


def seal_for(recipient_public_key: bytes, fields: Sequence[int]) -> SealedPayload:
    """
    Seal field elements to a recipient's long-lived public key.

    Used for the reveal exchange: the sealed payload sits with the ledger
    and is only released to the recipient after mutual consent.
    """
    ephemeral = KeyPair.generate()
    session = EncryptionSession.open(ephemeral, recipient_public_key, info=REVEAL_INFO)
    envelope = session.encrypt(fields)
    session.consume()
    return SealedPayload(
        ephemeral_public_key=ephemeral.public_key,
        nonce=envelope.nonce,
        ciphertext=envelope.ciphertext,
    )


def open_sealed(local_key_pair: KeyPair, sealed: SealedPayload) -> List[int]:
    """Open a payload sealed to `local_key_pair` by seal_for()."""
    session = EncryptionSession.open(local_key_pair, sealed.ephemeral_public_key, info=REVEAL_INFO)
    return session.decrypt(sealed.ciphertext, sealed.nonce)
