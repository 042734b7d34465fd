"""Tests for SSH key parsing and multi-provider key sync."""

import base64
import struct

import pytest

from errors import (
    CredentialConflict,
    CredentialNotFound,
    Forbidden,
    InvalidCredentialFormat,
    ProviderUnavailable,
    ValidationError,
)
from events import EventStore, EventType
from fakes import FakeClientFactory
from providers import get_provider_service_by_kind
from ssh_keys import CredentialSyncService, fingerprint, parse_public_key


def _ed25519(seed=0, comment="alice@laptop"):
    blob = (struct.pack(">I", 11) + b"ssh-ed25519"
            + struct.pack(">I", 32) + bytes((seed + i) % 256 for i in range(32)))
    line = "ssh-ed25519 " + base64.b64encode(blob).decode("ascii")
    return f"{line} {comment}" if comment else line


@pytest.fixture
def factory():
    return FakeClientFactory()


@pytest.fixture
def creds(db, catalog, factory):
    return CredentialSyncService(
        db, catalog,
        service_for_kind=lambda kind: get_provider_service_by_kind(kind, catalog, factory),
    )


def _client(factory, provider):
    return factory.clients[provider.provider_id]


# ── Parsing ──────────────────────────────────────────────────────────


class TestParsePublicKey:
    def test_valid_ed25519(self):
        parsed = parse_public_key(_ed25519())
        assert parsed.key_type == "ssh-ed25519"
        assert parsed.comment == "alice@laptop"
        assert parsed.fingerprint.startswith("SHA256:")
        assert not parsed.fingerprint.endswith("=")

    def test_fingerprint_ignores_comment_and_whitespace(self):
        assert fingerprint(_ed25519(comment="a")) == fingerprint("  " + _ed25519(comment="b") + "\n")
        assert fingerprint(_ed25519(seed=1)) != fingerprint(_ed25519(seed=2))

    def test_openssh_normalization(self):
        parsed = parse_public_key(_ed25519(comment="") + "   ")
        assert parsed.openssh == _ed25519(comment="")

    @pytest.mark.parametrize("bad", [
        "",
        "ssh-ed25519",
        "not-a-key AAAAC3NzaC1lZDI1NTE5",
        "ssh-ed25519 !!!notbase64!!!",
        "ssh-rsa " + base64.b64encode(struct.pack(">I", 11) + b"ssh-ed25519").decode(),
        "ssh-ed25519 " + base64.b64encode(b"\x00\x00").decode(),
    ])
    def test_invalid_formats(self, bad):
        with pytest.raises(InvalidCredentialFormat):
            parse_public_key(bad)


# ── Add ──────────────────────────────────────────────────────────────


class TestAdd:
    def test_synced_everywhere(self, creds, factory, linode_provider, do_provider):
        result = creds.add("u1", "laptop", _ed25519())
        assert result["warnings"] == []
        status = result["per_provider_status"]
        assert status["linode"]["status"] == "synced"
        assert status["digitalocean"]["status"] == "synced"
        key = creds.get_key("u1", result["id"])
        assert key.provider_key_ids == {"linode": status["linode"]["key_id"],
                                        "digitalocean": status["digitalocean"]["key_id"]}
        assert _client(factory, linode_provider).ssh_keys

    def test_partial_failure_is_a_warning(self, db, creds, factory, linode_provider, do_provider):
        factory(do_provider, "t").fail_ssh_with = ProviderUnavailable("DO is down",
                                                                     provider="digitalocean")
        result = creds.add("u1", "laptop", _ed25519())
        assert result["per_provider_status"]["linode"]["status"] == "synced"
        assert result["per_provider_status"]["digitalocean"]["status"] == "failed"
        assert result["per_provider_status"]["digitalocean"]["error_code"] == "provider_unavailable"
        assert result["warnings"] == ["digitalocean: DO is down"]
        key = creds.get_key("u1", result["id"])
        assert key.provider_key_ids["digitalocean"] is None
        assert key.provider_key_ids["linode"] is not None
        events = EventStore(db).get_entity_history("ssh_key", result["id"])
        assert events[0].event_type == EventType.CREDENTIAL_SYNC_PARTIAL.value

    def test_unconfigured_kind_is_skipped(self, creds, linode_provider):
        result = creds.add("u1", "laptop", _ed25519())
        assert result["per_provider_status"]["digitalocean"] == {"status": "skipped", "key_id": None}
        assert result["warnings"] == []

    def test_name_defaults_to_comment(self, creds, linode_provider):
        result = creds.add("u1", "", _ed25519(comment="bob@desk"))
        assert creds.get_key("u1", result["id"]).name == "bob@desk"

    def test_duplicate_fingerprint_conflicts(self, creds, factory, linode_provider):
        creds.add("u1", "a", _ed25519(comment="one"))
        registered = len(_client(factory, linode_provider).ssh_keys)
        with pytest.raises(CredentialConflict):
            creds.add("u1", "b", _ed25519(comment="two"))
        assert len(_client(factory, linode_provider).ssh_keys) == registered

    def test_same_key_for_different_users(self, creds, linode_provider):
        creds.add("u1", "a", _ed25519())
        creds.add("u2", "a", _ed25519())
        assert len(creds.list_keys("u1")) == 1
        assert len(creds.list_keys("u2")) == 1

    def test_invalid_key_never_reaches_providers(self, creds, factory, linode_provider):
        with pytest.raises(InvalidCredentialFormat):
            creds.add("u1", "bad", "ssh-ed25519 nope")
        assert factory.clients == {}

    def test_user_required(self, creds):
        with pytest.raises(ValidationError):
            creds.add("", "a", _ed25519())


# ── Ownership & delete ───────────────────────────────────────────────


class TestDelete:
    def test_other_users_key_is_forbidden(self, creds, linode_provider):
        result = creds.add("u1", "a", _ed25519())
        with pytest.raises(Forbidden):
            creds.get_key("u2", result["id"])
        with pytest.raises(Forbidden):
            creds.delete("u2", result["id"])

    def test_missing_key(self, creds):
        with pytest.raises(CredentialNotFound):
            creds.delete("u1", "key-nope")

    def test_delete_removes_everywhere(self, creds, factory, linode_provider, do_provider):
        result = creds.add("u1", "a", _ed25519())
        out = creds.delete("u1", result["id"])
        assert out["deleted"] is True
        assert out["warnings"] == []
        assert out["per_provider_status"]["linode"]["status"] == "deleted"
        assert _client(factory, linode_provider).ssh_keys == {}
        assert _client(factory, do_provider).ssh_keys == {}
        assert creds.list_keys("u1") == []

    def test_upstream_404_counts_as_deleted(self, creds, factory, linode_provider):
        result = creds.add("u1", "a", _ed25519())
        _client(factory, linode_provider).ssh_keys.clear()
        out = creds.delete("u1", result["id"])
        assert out["per_provider_status"]["linode"]["status"] == "deleted"
        assert out["warnings"] == []

    def test_upstream_failure_still_removes_local(self, creds, factory, linode_provider):
        result = creds.add("u1", "a", _ed25519())
        _client(factory, linode_provider).fail_ssh_with = ProviderUnavailable("down")
        out = creds.delete("u1", result["id"])
        assert out["per_provider_status"]["linode"]["status"] == "failed"
        assert len(out["warnings"]) == 1
        with pytest.raises(CredentialNotFound):
            creds.get_key("u1", result["id"])

    def test_removed_provider_is_reported_on_delete(self, db, creds, catalog, factory,
                                                    linode_provider, do_provider):
        result = creds.add("u1", "a", _ed25519())
        catalog.set_provider_active(do_provider.provider_id, False)
        out = creds.delete("u1", result["id"])
        do_status = out["per_provider_status"]["digitalocean"]
        assert do_status["status"] == "failed"
        assert do_status["error_code"] == "provider_not_found"
        assert len(out["warnings"]) == 1
        assert out["warnings"][0].startswith("digitalocean: ")
        assert out["per_provider_status"]["linode"]["status"] == "deleted"
        assert _client(factory, do_provider).ssh_keys
        assert creds.list_keys("u1") == []
        events = EventStore(db).get_entity_history("ssh_key", result["id"])
        assert any(e.event_type == EventType.CREDENTIAL_DELETED.value and e.status == "warning"
                   for e in events)

    def test_kinds_without_id_are_skipped(self, creds, linode_provider):
        result = creds.add("u1", "a", _ed25519())
        out = creds.delete("u1", result["id"])
        assert out["per_provider_status"]["digitalocean"]["status"] == "skipped"


# ── Retry ────────────────────────────────────────────────────────────


class TestRetrySync:
    def test_retry_fills_missing_ids(self, creds, factory, linode_provider, do_provider):
        do_client = factory(do_provider, "t")
        do_client.fail_ssh_with = ProviderUnavailable("down")
        result = creds.add("u1", "a", _ed25519())
        linode_id = creds.get_key("u1", result["id"]).provider_key_ids["linode"]

        do_client.fail_ssh_with = None
        out = creds.retry_sync("u1", result["id"])
        assert list(out["per_provider_status"]) == ["digitalocean"]
        assert out["per_provider_status"]["digitalocean"]["status"] == "synced"
        assert out["warnings"] == []

        ids = creds.get_key("u1", result["id"]).provider_key_ids
        assert ids["linode"] == linode_id
        assert ids["digitalocean"] == out["per_provider_status"]["digitalocean"]["key_id"]
        assert len(_client(factory, linode_provider).ssh_keys) == 1

    def test_retry_with_nothing_missing(self, creds, linode_provider, do_provider):
        result = creds.add("u1", "a", _ed25519())
        out = creds.retry_sync("u1", result["id"])
        assert out["per_provider_status"] == {}

    def test_retry_still_failing_keeps_null(self, creds, factory, linode_provider, do_provider):
        factory(do_provider, "t").fail_ssh_with = ProviderUnavailable("down")
        result = creds.add("u1", "a", _ed25519())
        out = creds.retry_sync("u1", result["id"])
        assert out["per_provider_status"]["digitalocean"]["status"] == "failed"
        assert creds.get_key("u1", result["id"]).provider_key_ids["digitalocean"] is None
