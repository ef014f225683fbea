"""
Tests for key material and per-field secret envelopes.
"""

import json
import logging

import pytest
from jose import jwe

from connectors.encryption import KeyPair, SecretCodec
from connectors.schema import ConfigField, ConfigSchemaBuilder
from utils.errors import DecryptionError, KeyMaterialError


def _schema() -> ConfigSchemaBuilder:
    return ConfigSchemaBuilder().add_fields([
        ConfigField(name="apiKey", display_name="API Key"),
        ConfigField(name="region", display_name="Region", plain=True),
    ]).require_oauth()


class TestEnvelope:
    def test_round_trip(self, codec):
        token = {"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 3600}
        assert codec.decrypt(codec.encrypt("s3cr3t-ü")) == "s3cr3t-ü"
        assert codec.decrypt(codec.encrypt(token)) == token

    def test_envelope_is_compact_jwe(self, codec):
        envelope = codec.encrypt("value")
        assert envelope.count(".") == 4
        assert "value" not in envelope

    def test_encryption_is_randomized(self, codec):
        assert codec.encrypt("value") != codec.encrypt("value")

    def test_mismatched_recipient_fails(self, codec):
        envelope = codec.encrypt("value", "conn-a")
        assert codec.decrypt(envelope, "conn-a") == "value"
        with pytest.raises(DecryptionError, match="not addressed"):
            codec.decrypt(envelope, "conn-b")

    def test_envelope_header_and_claims(self, codec, key_pair):
        envelope = codec.encrypt({"a": 1}, "conn-a", issuer="peer")

        header = jwe.get_unverified_header(envelope)
        assert header["alg"] == "RSA-OAEP-256"
        assert header["enc"] == "A256GCM"
        assert header["kid"] == "conn-a"
        claims = json.loads(jwe.decrypt(envelope, key_pair.private_pem()))
        assert claims == {"iss": "peer", "aud": "conn-a", "value": {"a": 1}}

    def test_tampered_header_fails(self, codec):
        envelope = codec.encrypt("value", "conn-a")
        other = codec.encrypt("value", "conn-b")
        forged = ".".join([other.split(".")[0]] + envelope.split(".")[1:])

        with pytest.raises(DecryptionError):
            codec.decrypt(forged, "conn-b")

    def test_tampered_ciphertext_fails(self, codec):
        parts = codec.encrypt("a longer secret value", "conn-a").split(".")
        middle = len(parts[3]) // 2
        flipped = "A" if parts[3][middle] != "A" else "B"
        parts[3] = parts[3][:middle] + flipped + parts[3][middle + 1:]

        with pytest.raises(DecryptionError):
            codec.decrypt(".".join(parts), "conn-a")

    def test_foreign_envelope_without_claims_fails(self, codec, key_pair):
        raw = jwe.encrypt(b'"bare"', key_pair.public_pem(), encryption="A256GCM", algorithm="RSA-OAEP-256")
        with pytest.raises(DecryptionError, match="malformed envelope payload"):
            codec.decrypt(raw.decode("ascii"))

    def test_wrong_key_fails(self, codec):
        stranger = SecretCodec(KeyPair.generate(1024), codec.connector_id)
        with pytest.raises(DecryptionError):
            stranger.decrypt(codec.encrypt("value"))

    @pytest.mark.parametrize("envelope", ["", "a.b.c", "!!.!!.!!.!!.!!", 42, None])
    def test_malformed_envelopes(self, codec, envelope):
        with pytest.raises(DecryptionError):
            codec.decrypt(envelope)


class TestKeyPair:
    def test_export_and_reload(self, key_pair):
        reloaded = KeyPair.from_base64(key_pair.export_private_base64(), key_pair.export_public_base64())
        codec = SecretCodec(reloaded, "conn")

        assert SecretCodec(key_pair, "conn").decrypt(codec.encrypt("x")) == "x"

    def test_missing_keys(self, key_pair):
        with pytest.raises(KeyMaterialError):
            KeyPair.from_base64(None, key_pair.export_public_base64())

    def test_mismatched_pair(self, key_pair):
        other = KeyPair.generate(1024)
        with pytest.raises(KeyMaterialError, match="does not belong"):
            KeyPair.from_base64(key_pair.export_private_base64(), other.export_public_base64())

    def test_garbage_key(self, key_pair):
        with pytest.raises(KeyMaterialError):
            KeyPair.from_base64("not base64 at all!", key_pair.export_public_base64())

    def test_from_settings(self, settings, key_pair):
        loaded = KeyPair.from_settings(settings)
        assert loaded.export_public_base64() == key_pair.export_public_base64()


class TestDecryptConfig:
    def test_plain_and_encrypted_fields(self, codec):
        secrets = {
            "apiKey": codec.encrypt("k-123"),
            "region": "eu-west-1",
            "oauthResult": codec.encrypt({"access_token": "at"}),
        }
        assert codec.decrypt_config(secrets, _schema()) == {
            "apiKey": "k-123",
            "region": "eu-west-1",
            "oauthResult": {"access_token": "at"},
        }

    def test_failed_field_is_dropped_and_logged(self, codec, caplog):
        secrets = {"apiKey": "garbage", "oauthResult": codec.encrypt({"access_token": "at"})}

        with caplog.at_level(logging.WARNING, logger="connectors.encryption"):
            decrypted = codec.decrypt_config(secrets, _schema())

        assert decrypted == {"oauthResult": {"access_token": "at"}}
        assert "apiKey" in caplog.text

    def test_empty_values_are_skipped(self, codec):
        assert codec.decrypt_config({"apiKey": "", "region": None}, _schema()) == {}

    def test_same_snapshot_twice_is_idempotent(self, codec):
        secrets = {"apiKey": codec.encrypt("k-123"), "region": "eu"}
        schema = _schema()

        assert codec.decrypt_config(secrets, schema) == codec.decrypt_config(secrets, schema)
