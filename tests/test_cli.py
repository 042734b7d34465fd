"""Tests for the stratus operator CLI."""

import sys

import pytest

import billing
import cli
import db as db_module
import ssh_keys


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    monkeypatch.setenv("STRATUS_DB_PATH", str(tmp_path / "cli.db"))
    db_module.reset_db()
    monkeypatch.setattr(billing, "_billing_engine", None)
    monkeypatch.setattr(ssh_keys, "_credential_service", None)
    yield
    db_module.reset_db()


def run(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["stratus", *argv])
    cli.main()


class TestCli:
    def test_no_command_prints_help(self, monkeypatch, capsys):
        with pytest.raises(SystemExit) as exc:
            run(monkeypatch)
        assert exc.value.code == 1
        assert "billing-run" in capsys.readouterr().out

    def test_provider_and_plan_flow(self, monkeypatch, capsys):
        run(monkeypatch, "provider-add", "Linode main", "linode", "--token", "tok",
            "--regions", "us-east, eu-west")
        out = capsys.readouterr().out
        provider_id = out.split("Provider added: ")[1].split(" |")[0]

        run(monkeypatch, "providers")
        listing = capsys.readouterr().out
        assert "token set" in listing
        assert "us-east,eu-west" in listing

        run(monkeypatch, "plan-add", provider_id, "g6-nanode-1", "0.0075",
            "--markup-hourly", "0.0025", "--label", "Nanode")
        assert "$0.0100/h" in capsys.readouterr().out

    def test_plan_for_unknown_provider_exits(self, monkeypatch, capsys):
        with pytest.raises(SystemExit) as exc:
            run(monkeypatch, "plan-add", "prov-missing", "g6-nanode-1", "0.01")
        assert exc.value.code == 1
        assert "Error:" in capsys.readouterr().err

    def test_credit_and_wallet(self, monkeypatch, capsys):
        run(monkeypatch, "credit", "org-1", "25")
        assert "New balance: $25.0000" in capsys.readouterr().out
        run(monkeypatch, "wallet", "org-1")
        out = capsys.readouterr().out
        assert "Balance: $25.0000" in out
        assert "Manual credit" in out

    def test_empty_listings(self, monkeypatch, capsys):
        run(monkeypatch, "instances")
        assert "No instances." in capsys.readouterr().out
        run(monkeypatch, "ssh-keys", "u1")
        assert "No SSH keys." in capsys.readouterr().out

    def test_billing_run_with_nothing_to_bill(self, monkeypatch, capsys):
        run(monkeypatch, "billing-run")
        assert "0 billed" in capsys.readouterr().out

    def test_audit_verify(self, monkeypatch, capsys):
        run(monkeypatch, "credit", "org-1", "5")
        capsys.readouterr()
        run(monkeypatch, "audit-verify")
        assert "Activity chain OK" in capsys.readouterr().out
