"""Tests for provider token encryption at rest."""

from credentials import decrypt_secret, encrypt_secret, mask_secret


class TestCredentialVault:
    def test_round_trip(self):
        token = encrypt_secret("lin-secret-token")
        assert token and token != "lin-secret-token"
        assert decrypt_secret(token) == "lin-secret-token"

    def test_ciphertexts_differ(self):
        assert encrypt_secret("same") != encrypt_secret("same")

    def test_empty_stays_empty(self):
        assert encrypt_secret("") == ""
        assert decrypt_secret("") == ""

    def test_undecryptable_blob_reads_as_missing(self):
        assert decrypt_secret("gAAAAAB-not-a-real-token") == ""

    def test_rotated_key_reads_as_missing(self, monkeypatch):
        token = encrypt_secret("abc")
        monkeypatch.setenv("STRATUS_CREDENTIAL_KEY", "a-different-key")
        assert decrypt_secret(token) == ""


class TestMask:
    def test_long_secret(self):
        assert mask_secret("abcdefghijkl") == "abcd…ijkl"

    def test_short_secret(self):
        assert mask_secret("abc") == "***"

    def test_empty(self):
        assert mask_secret("") == ""
