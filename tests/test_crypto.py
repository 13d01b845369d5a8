"""Tests for session cryptography."""
import pytest

from tripmatch.shared.codec import ciphertext_size
from tripmatch.shared.crypto import (
    NONCE_BYTES,
    EncryptionSession,
    KeyPair,
    open_sealed,
    seal_for,
)
from tripmatch.shared.errors import (
    DecryptionFailed,
    KeyAgreementFailed,
    NonceReuse,
    SessionConsumed,
)


@pytest.fixture
def cluster():
    return KeyPair.generate()


@pytest.fixture
def session(cluster):
    return EncryptionSession.open(KeyPair.generate(), cluster.public_key)


def cluster_side(cluster, envelope):
    return EncryptionSession.open(cluster, envelope.public_key)


class TestKeyAgreement:
    """Test X25519 key agreement."""

    def test_both_sides_agree(self, cluster):
        client = KeyPair.generate()
        assert client.exchange(cluster.public_key) == cluster.exchange(client.public_key)

    def test_private_key_round_trip(self):
        pair = KeyPair.generate()
        restored = KeyPair.from_private_bytes(pair.private_bytes())
        assert restored.public_key == pair.public_key

    def test_malformed_public_key(self):
        with pytest.raises(KeyAgreementFailed):
            KeyPair.generate().exchange(b"\x01" * 31)

    def test_low_order_public_key(self):
        with pytest.raises(KeyAgreementFailed):
            KeyPair.generate().exchange(b"\x00" * 32)

    def test_malformed_private_key(self):
        with pytest.raises(KeyAgreementFailed):
            KeyPair.from_private_bytes(b"short")


class TestEncryption:
    """Test authenticated encryption of field elements."""

    def test_cluster_decrypts(self, cluster, session):
        fields = [1, 2, 3, 2 ** 63]
        envelope = session.encrypt(fields)
        assert cluster_side(cluster, envelope).decrypt(envelope.ciphertext, envelope.nonce) == fields

    def test_envelope_shape(self, session):
        envelope = session.encrypt([7] * 55)
        assert len(envelope.nonce) == NONCE_BYTES
        assert envelope.public_key == session.public_key
        assert len(envelope.ciphertext) == ciphertext_size(55)

    def test_tampered_ciphertext_fails(self, cluster, session):
        envelope = session.encrypt([1, 2, 3])
        tampered = bytearray(envelope.ciphertext)
        tampered[0] ^= 0x01
        with pytest.raises(DecryptionFailed):
            cluster_side(cluster, envelope).decrypt(bytes(tampered), envelope.nonce)

    def test_wrong_nonce_fails(self, cluster, session):
        envelope = session.encrypt([1, 2, 3])
        with pytest.raises(DecryptionFailed):
            cluster_side(cluster, envelope).decrypt(envelope.ciphertext, b"\x00" * NONCE_BYTES)

    def test_wrong_key_fails(self, session):
        envelope = session.encrypt([1, 2, 3])
        stranger = EncryptionSession.open(KeyPair.generate(), envelope.public_key)
        with pytest.raises(DecryptionFailed):
            stranger.decrypt(envelope.ciphertext, envelope.nonce)

    def test_nonce_reuse_refused(self, session):
        nonce = b"\x01" * NONCE_BYTES
        session.encrypt([1], nonce=nonce)
        with pytest.raises(NonceReuse):
            session.encrypt([2], nonce=nonce)

    def test_random_nonces_differ(self, session):
        nonces = {session.encrypt([1]).nonce for _ in range(50)}
        assert len(nonces) == 50

    def test_bad_nonce_length(self, session):
        with pytest.raises(ValueError):
            session.encrypt([1], nonce=b"\x00" * 12)

    def test_consumed_session_refuses(self, session):
        session.consume()
        assert session.consumed
        with pytest.raises(SessionConsumed):
            session.encrypt([1])


class TestSealing:
    """Test payloads sealed to a long-lived key."""

    def test_recipient_opens(self):
        recipient = KeyPair.generate()
        sealed = seal_for(recipient.public_key, [42, 43])
        assert open_sealed(recipient, sealed) == [42, 43]

    def test_other_key_cannot_open(self):
        sealed = seal_for(KeyPair.generate().public_key, [42])
        with pytest.raises(DecryptionFailed):
            open_sealed(KeyPair.generate(), sealed)

    def test_reveal_keys_separate_from_session_keys(self):
        """A sealed payload does not open under a plain session with the same keys."""
        recipient = KeyPair.generate()
        sealed = seal_for(recipient.public_key, [42])
        session = EncryptionSession.open(recipient, sealed.ephemeral_public_key)
        with pytest.raises(DecryptionFailed):
            session.decrypt(sealed.ciphertext, sealed.nonce)
