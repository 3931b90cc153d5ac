"""
Tests for AES-256-CBC helpers and webhook signature verification
"""
import base64
import hashlib
import hmac

import pytest

from partner_sync.core.crypto import (
    IV_SIZE,
    DecryptionError,
    decrypt_if_encrypted,
    decrypt_string,
    encrypt_bytes,
    encrypt_string,
    generate_key,
    is_encrypted,
)
from partner_sync.domain.payloads import WebhookEnvelope
from partner_sync.domain.services.crypto_verifier import (
    compute_signature,
    encrypt_envelope,
    verify_and_decrypt,
    verify_signature,
)


class TestEncryption:
    @pytest.mark.unit
    def test_round_trip(self, webhook_keys):
        ciphertext = encrypt_string('{"sku": "X1"}', webhook_keys["enc_key"])
        assert decrypt_string(ciphertext, webhook_keys["enc_key"]) == '{"sku": "X1"}'

    @pytest.mark.unit
    def test_iv_is_prepended(self, webhook_keys):
        iv = bytes(range(16, 32))
        ciphertext = encrypt_bytes(b"hello", webhook_keys["enc_key"], iv=iv)
        blob = base64.b64decode(ciphertext)

        assert blob[:IV_SIZE] == iv
        # one padded block after the IV
        assert len(blob) == IV_SIZE + 16

    @pytest.mark.unit
    def test_random_iv_per_encryption(self, webhook_keys):
        first = encrypt_string("same text", webhook_keys["enc_key"])
        second = encrypt_string("same text", webhook_keys["enc_key"])
        assert first != second

    @pytest.mark.unit
    def test_wrong_key_fails(self, webhook_keys):
        ciphertext = encrypt_string("secret payload", webhook_keys["enc_key"])
        try:
            result = decrypt_string(ciphertext, generate_key())
        except DecryptionError:
            return
        # a wrong key that happens to leave valid padding still yields garbage
        assert result != "secret payload"

    @pytest.mark.unit
    @pytest.mark.parametrize("ciphertext", ["not base64!!", "", base64.b64encode(b"short").decode()])
    def test_malformed_ciphertext(self, webhook_keys, ciphertext):
        with pytest.raises(DecryptionError):
            decrypt_string(ciphertext, webhook_keys["enc_key"])

    @pytest.mark.unit
    def test_ciphertext_not_block_aligned(self, webhook_keys):
        blob = base64.b64decode(encrypt_string("payload", webhook_keys["enc_key"]))
        with pytest.raises(DecryptionError):
            decrypt_string(base64.b64encode(blob[:-1]).decode(), webhook_keys["enc_key"])

    @pytest.mark.unit
    def test_key_must_be_32_bytes(self):
        short_key = base64.b64encode(b"x" * 16).decode()
        with pytest.raises(DecryptionError):
            encrypt_string("payload", short_key)

    @pytest.mark.unit
    def test_generate_key(self):
        assert len(base64.b64decode(generate_key())) == 32


class TestSecretHelpers:
    @pytest.mark.unit
    def test_is_encrypted(self, webhook_keys):
        assert is_encrypted(encrypt_string("password", webhook_keys["enc_key"]))
        assert not is_encrypted("plain-password")
        assert not is_encrypted("")
        assert not is_encrypted(None)

    @pytest.mark.unit
    def test_decrypt_if_encrypted(self, webhook_keys):
        encrypted = encrypt_string("erp-password", webhook_keys["enc_key"])
        assert decrypt_if_encrypted(encrypted, webhook_keys["enc_key"]) == "erp-password"

    @pytest.mark.unit
    def test_plain_values_pass_through(self, webhook_keys):
        assert decrypt_if_encrypted("plain-password", webhook_keys["enc_key"]) == "plain-password"

    @pytest.mark.unit
    def test_no_master_key_passes_through(self, webhook_keys):
        encrypted = encrypt_string("erp-password", webhook_keys["enc_key"])
        assert decrypt_if_encrypted(encrypted, None) == encrypted


class TestSignature:
    @pytest.fixture
    def envelope(self, webhook_keys) -> tuple[WebhookEnvelope, str]:
        return encrypt_envelope(
            '{"productData": {"sku": "X1", "id": 7}}',
            guid="guid-1",
            webhook_type="ProductChanged",
            **webhook_keys,
        )

    @pytest.mark.unit
    def test_signature_covers_guid_type_and_data(self, envelope, webhook_keys):
        env, signature = envelope
        expected = hmac.new(
            webhook_keys["hmac_key"].encode(),
            f"{env.guid}{env.webhook_type}{env.webhook_data}".encode(),
            hashlib.sha256,
        ).hexdigest()
        assert signature == expected == compute_signature(env, webhook_keys["hmac_key"])

    @pytest.mark.unit
    def test_hex_upper_and_base64_accepted(self, envelope, webhook_keys):
        env, signature = envelope
        as_base64 = base64.b64encode(bytes.fromhex(signature)).decode()

        assert verify_signature(env, signature.upper(), webhook_keys["hmac_key"])
        assert verify_signature(env, as_base64, webhook_keys["hmac_key"])
        assert verify_signature(env, f"sha256={signature}", webhook_keys["hmac_key"])

    @pytest.mark.unit
    def test_verify_and_decrypt_success(self, envelope, webhook_keys):
        env, signature = envelope
        plaintext, ok = verify_and_decrypt(env, signature, **webhook_keys)

        assert ok is True
        assert plaintext == '{"productData": {"sku": "X1", "id": 7}}'

    @pytest.mark.unit
    def test_tampered_signature_rejected(self, envelope, webhook_keys):
        env, signature = envelope
        flipped = ("0" if signature[0] != "0" else "1") + signature[1:]

        assert verify_and_decrypt(env, flipped, **webhook_keys) == (None, False)

    @pytest.mark.unit
    def test_tampered_fields_rejected(self, envelope, webhook_keys):
        env, signature = envelope
        for changed in (
            env.model_copy(update={"guid": "guid-2"}),
            env.model_copy(update={"webhook_type": "OrderChanged"}),
        ):
            assert verify_and_decrypt(changed, signature, **webhook_keys) == (None, False)

    @pytest.mark.unit
    def test_garbage_signature_rejected(self, envelope, webhook_keys):
        env, _ = envelope
        assert verify_and_decrypt(env, "not-a-signature", **webhook_keys) == (None, False)
        assert verify_and_decrypt(env, "", **webhook_keys) == (None, False)

    @pytest.mark.unit
    def test_valid_signature_undecryptable_payload(self, webhook_keys):
        # correctly signed, but the data is not IV || ciphertext
        env = WebhookEnvelope(
            guid="guid-3",
            webhook_type="ProductChanged",
            webhook_data=base64.b64encode(b"x" * 40).decode(),
        )
        signature = compute_signature(env, webhook_keys["hmac_key"])

        assert verify_and_decrypt(env, signature, **webhook_keys) == (None, False)

    @pytest.mark.unit
    def test_wrong_hmac_key_rejected(self, envelope, webhook_keys):
        env, signature = envelope
        assert verify_and_decrypt(
            env, signature, hmac_key="other-secret", enc_key=webhook_keys["enc_key"]
        ) == (None, False)
