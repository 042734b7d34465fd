"""Tests for the Stratus HTTP API.

Each test gets its own SQLite file and an in-memory provider client
factory, so no request ever leaves the process.
"""

import base64
import os
import struct
import time

import pytest

os.environ.setdefault("STRATUS_ENV", "test")

from fastapi.testclient import TestClient

import api
import db as db_module
from api import app
from fakes import FakeClientFactory
from instances import InstanceStore, ResourceInstance
from providers import resource_cache
from wallets import WalletLedger

client = TestClient(app)


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    monkeypatch.setenv("STRATUS_DB_PATH", str(tmp_path / "api.db"))
    db_module.reset_db()
    resource_cache.invalidate()
    factory = FakeClientFactory()
    monkeypatch.setattr(api, "provider_client_factory", factory)
    yield factory
    db_module.reset_db()


def _ssh_key():
    blob = (struct.pack(">I", 11) + b"ssh-ed25519"
            + struct.pack(">I", 32) + bytes(range(32)))
    return "ssh-ed25519 " + base64.b64encode(blob).decode("ascii") + " dev@box"


def _provider(kind="linode", token="tok", **extra):
    r = client.post("/providers", json={"name": f"{kind} main", "kind": kind,
                                        "api_token": token, **extra})
    assert r.status_code == 200, r.text
    return r.json()["provider"]


def _plan(provider_id, base="0.03"):
    r = client.post("/plans", json={"provider_id": provider_id,
                                    "upstream_plan_id": "g6-standard-1",
                                    "base_hourly": base})
    assert r.status_code == 200, r.text
    return r.json()["plan"]


# ── Health ───────────────────────────────────────────────────────────


class TestHealth:
    def test_root(self):
        assert client.get("/").json()["name"] == "Stratus"

    def test_healthz(self):
        r = client.get("/healthz")
        assert r.status_code == 200
        assert r.json()["ok"] is True

    def test_readyz(self):
        r = client.get("/readyz")
        assert r.status_code == 200
        assert r.json()["storage"]["backend"] == "sqlite"

    def test_metrics(self):
        body = client.get("/metrics").json()
        assert body["ok"] is True
        assert "provider_cache" in body["metrics"]
        assert body["metrics"]["billable_instances"] == 0


class TestAuth:
    def test_token_required_outside_dev(self, monkeypatch):
        monkeypatch.setattr(api, "AUTH_REQUIRED", True)
        monkeypatch.setenv("STRATUS_API_TOKEN", "s3cret")
        assert client.get("/providers").status_code == 401
        ok = client.get("/providers", headers={"Authorization": "Bearer s3cret"})
        assert ok.status_code == 200
        assert client.get("/healthz").status_code == 200

    def test_wrong_token(self, monkeypatch):
        monkeypatch.setattr(api, "AUTH_REQUIRED", True)
        monkeypatch.setenv("STRATUS_API_TOKEN", "s3cret")
        r = client.get("/providers", headers={"Authorization": "Bearer nope"})
        assert r.status_code == 401
        assert r.json()["error"]["code"] == "unauthorized"


# ── Providers & plans ────────────────────────────────────────────────


class TestProviders:
    def test_add_and_list(self):
        p = _provider()
        assert p["has_credentials"] is True
        assert "api_token" not in p
        body = client.get("/providers").json()
        assert [x["provider_id"] for x in body["providers"]] == [p["provider_id"]]
        assert body["supported_kinds"] == ["linode", "digitalocean"]

    def test_unknown_kind(self):
        r = client.post("/providers", json={"name": "x", "kind": "vultr"})
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "validation_error"

    def test_deactivate_blocks_use(self):
        p = _provider()
        r = client.patch(f"/providers/{p['provider_id']}/active", json={"active": False})
        assert r.json()["provider"]["active"] is False
        r = client.get(f"/providers/{p['provider_id']}/plans")
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "provider_inactive"

    def test_missing_credentials(self):
        p = _provider(token="")
        r = client.post(f"/providers/{p['provider_id']}/validate")
        assert r.status_code == 424
        err = r.json()["error"]
        assert err["code"] == "missing_credentials"
        assert err["user_message"]

    def test_rotate_token(self):
        p = _provider(token="")
        r = client.patch(f"/providers/{p['provider_id']}/token", json={"api_token": "new"})
        assert r.json()["provider"]["has_credentials"] is True
        assert client.post(f"/providers/{p['provider_id']}/validate").json()["valid"] is True

    def test_unknown_provider(self):
        r = client.get("/providers/prov-nope/regions")
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "provider_not_found"

    def test_catalog_listings(self):
        p = _provider(allowed_regions=["us-east"])
        pid = p["provider_id"]
        assert client.get(f"/providers/{pid}/plans").json()["plans"][0]["id"] == "g6-nanode-1"
        assert client.get(f"/providers/{pid}/images").json()["images"][0]["id"] == "linode/debian12"
        assert [r["id"] for r in client.get(f"/providers/{pid}/regions").json()["regions"]] == [
            "us-east"]

    def test_plans(self):
        p = _provider()
        plan = _plan(p["provider_id"])
        assert plan["hourly_rate"] == "0.0300"
        listed = client.get("/plans", params={"provider_id": p["provider_id"]}).json()["plans"]
        assert [x["plan_id"] for x in listed] == [plan["plan_id"]]

    def test_negative_plan_price_rejected(self):
        p = _provider()
        r = client.post("/plans", json={"provider_id": p["provider_id"],
                                        "upstream_plan_id": "x", "base_hourly": "-1"})
        assert r.status_code == 422


# ── Instances ────────────────────────────────────────────────────────


class TestInstances:
    def _create(self, provider_id, plan_id, **extra):
        payload = {"organization_id": "org-1", "plan_id": plan_id, "label": "web-1",
                   "region": "us-east", "image": "linode/debian12", **extra}
        return client.post(f"/providers/{provider_id}/instances", json=payload)

    def test_create_returns_provisioning(self):
        p = _provider()
        plan = _plan(p["provider_id"])
        r = self._create(p["provider_id"], plan["plan_id"])
        assert r.status_code == 200, r.text
        inst = r.json()["instance"]
        assert inst["status"] == "provisioning"
        assert inst["external_id"]
        local = client.get(f"/instances/{inst['id']}").json()["instance"]
        assert local["last_billed_at"] == local["created_at"]

    def test_create_without_image_is_upstream_validation(self):
        p = _provider()
        plan = _plan(p["provider_id"])
        r = self._create(p["provider_id"], plan["plan_id"], image=None)
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "upstream_validation"
        assert client.get("/instances").json()["instances"] == []

    def test_action_ack(self, isolated):
        p = _provider()
        plan = _plan(p["provider_id"])
        inst = self._create(p["provider_id"], plan["plan_id"]).json()["instance"]
        r = client.post(f"/providers/{p['provider_id']}/instances/{inst['external_id']}/actions",
                        json={"action": "reboot"}, headers={"X-User-Id": "u1"})
        assert r.status_code == 200
        assert r.json()["accepted"] is True
        assert (inst["external_id"], "reboot") in isolated.clients[p["provider_id"]].actions

    def test_unsupported_action(self):
        p = _provider()
        r = client.post(f"/providers/{p['provider_id']}/instances/1/actions",
                        json={"action": "explode"})
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "unsupported_action"

    def test_upstream_view_and_sync(self):
        p = _provider()
        plan = _plan(p["provider_id"])
        inst = self._create(p["provider_id"], plan["plan_id"]).json()["instance"]
        remote = client.get(f"/providers/{p['provider_id']}/instances/{inst['external_id']}")
        assert remote.json()["instance"]["instance_id"] == inst["id"]
        listed = client.get(f"/providers/{p['provider_id']}/instances").json()["instances"]
        assert len(listed) == 1
        synced = client.post(f"/instances/{inst['id']}/sync").json()["instance"]
        assert synced["status"] == "running"

    def test_local_instance_not_found(self):
        r = client.get("/instances/vps-missing")
        assert r.status_code == 404
        assert r.json()["ok"] is False


# ── Billing & wallets ────────────────────────────────────────────────


class TestBillingAndWallets:
    def test_credit_and_history(self):
        r = client.post("/wallets/org-1/credit", json={"amount": "12.5"})
        assert r.status_code == 200
        assert r.json()["transaction"]["balance_after"] == "12.5000"
        assert client.get("/wallets/org-1").json()["wallet"]["balance"] == "12.5000"
        txs = client.get("/wallets/org-1/transactions").json()["transactions"]
        assert len(txs) == 1
        assert client.get("/wallets/org-1/verify").json()["consistent"] is True

    def test_credit_must_be_positive(self):
        assert client.post("/wallets/org-1/credit", json={"amount": 0}).status_code == 422

    def test_billing_run(self):
        p = _provider()
        plan = _plan(p["provider_id"])
        client.post("/wallets/org-1/credit", json={"amount": "10"})
        inst = InstanceStore(db_module.get_db()).insert(ResourceInstance(
            organization_id="org-1", provider_id=p["provider_id"], external_id="500",
            plan_id=plan["plan_id"], status="running", created_at=time.time() - 3 * 3600 - 600,
        ))
        r = client.post("/billing/run")
        body = r.json()
        assert r.status_code == 200
        assert body["success"] is True
        assert body["instances_billed"] == 1
        assert body["total_amount"] == "0.0900"
        again = client.post("/billing/run").json()
        assert again["instances_billed"] == 0
        assert client.get("/wallets/org-1").json()["wallet"]["balance"] == "9.9100"
        assert WalletLedger(db_module.get_db()).verify_wallet("org-1")["consistent"] is True
        charges = client.get(f"/instances/{inst.instance_id}/charges").json()["charges"]
        assert [c["amount"] for c in charges] == ["-0.0900"]
        assert charges[0]["instance_id"] == inst.instance_id

    def test_charges_for_unknown_instance(self):
        assert client.get("/instances/vps-missing/charges").status_code == 404

    def test_burn_rate(self):
        p = _provider()
        plan = _plan(p["provider_id"], base="0.5")
        client.post("/wallets/org-1/credit", json={"amount": "2"})
        InstanceStore(db_module.get_db()).insert(ResourceInstance(
            organization_id="org-1", provider_id=p["provider_id"], external_id="9",
            plan_id=plan["plan_id"], status="running",
        ))
        body = client.get("/billing/burn-rate/org-1").json()
        assert body["hourly_rate"] == "0.5000"
        assert body["hours_remaining"] == "4.00"

    def test_daemon_status_unknown(self):
        body = client.get("/billing/daemon-status").json()
        assert body["daemon"]["status"] == "unknown"
        assert body["daemon"]["builtin_fallback_active"] is True


# ── SSH keys ─────────────────────────────────────────────────────────


class TestSshKeys:
    def test_user_header_required(self):
        r = client.get("/ssh-keys")
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "http_error"

    def test_add_list_delete(self):
        _provider("linode")
        r = client.post("/ssh-keys", json={"name": "laptop", "public_key": _ssh_key()},
                        headers={"X-User-Id": "u1"})
        assert r.status_code == 200, r.text
        body = r.json()
        assert body["fingerprint"].startswith("SHA256:")
        assert body["per_provider_status"]["linode"]["status"] == "synced"
        assert body["per_provider_status"]["digitalocean"]["status"] == "skipped"

        keys = client.get("/ssh-keys", headers={"X-User-Id": "u1"}).json()["keys"]
        assert [k["id"] for k in keys] == [body["id"]]
        assert client.get("/ssh-keys", headers={"X-User-Id": "u2"}).json()["keys"] == []

        r = client.delete(f"/ssh-keys/{body['id']}", headers={"X-User-Id": "u2"})
        assert r.status_code == 403
        r = client.delete(f"/ssh-keys/{body['id']}", headers={"X-User-Id": "u1"})
        assert r.json()["deleted"] is True

    def test_duplicate_is_conflict(self):
        _provider("linode")
        headers = {"X-User-Id": "u1"}
        client.post("/ssh-keys", json={"public_key": _ssh_key()}, headers=headers)
        r = client.post("/ssh-keys", json={"public_key": _ssh_key()}, headers=headers)
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "credential_conflict"

    def test_invalid_key(self):
        r = client.post("/ssh-keys", json={"public_key": "ssh-ed25519 garbage!"},
                        headers={"X-User-Id": "u1"})
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "invalid_credential_format"

    def test_retry_sync(self):
        headers = {"X-User-Id": "u1"}
        added = client.post("/ssh-keys", json={"public_key": _ssh_key()}, headers=headers).json()
        assert added["per_provider_status"]["linode"]["status"] == "skipped"
        _provider("linode")
        r = client.post(f"/ssh-keys/{added['id']}/sync", headers=headers)
        assert r.json()["per_provider_status"]["linode"]["status"] == "synced"


# ── Activity ─────────────────────────────────────────────────────────


class TestActivity:
    def test_activity_feed_and_chain(self):
        client.post("/wallets/org-1/credit", json={"amount": "1"})
        events = client.get("/activity", params={"organization_id": "org-1"}).json()["events"]
        assert [e["event_type"] for e in events] == ["wallet.credited"]
        assert client.get("/activity/verify").json()["valid"] is True
