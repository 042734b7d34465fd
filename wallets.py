# Stratus Wallet & Transaction Ledger
# One prepaid wallet per organization. Every balance change writes an
# immutable ledger row in the same transaction, so the sum of a wallet's
# transactions always equals its balance. The balance never goes negative.
#
# Payment capture lives outside this system and calls credit(); the billing
# engine debits inside its own per-instance transaction via debit_in_tx().

import logging
import os
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

from db import Database, get_db, to_money
from errors import InsufficientFunds, ValidationError

log = logging.getLogger("stratus")

DEFAULT_CURRENCY = os.environ.get("STRATUS_CURRENCY", "USD").upper()


class TxType(str, Enum):
    CHARGE = "charge"
    CREDIT = "credit"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


@dataclass
class Wallet:
    organization_id: str
    balance: Decimal = Decimal("0.0000")
    currency: str = DEFAULT_CURRENCY
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "organization_id": self.organization_id,
            "balance": str(self.balance),
            "currency": self.currency,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Transaction:
    tx_id: str
    organization_id: str
    tx_type: str
    amount: Decimal
    balance_after: Decimal
    instance_id: Optional[str] = None
    hours: Optional[Decimal] = None
    description: str = ""
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "tx_id": self.tx_id,
            "organization_id": self.organization_id,
            "tx_type": self.tx_type,
            "amount": str(self.amount),
            "balance_after": str(self.balance_after),
            "instance_id": self.instance_id,
            "hours": str(self.hours) if self.hours is not None else None,
            "description": self.description,
            "created_at": self.created_at,
        }


def _new_tx_id() -> str:
    return f"TX-{int(time.time())}-{os.urandom(4).hex()}"


def _row_to_wallet(r) -> Wallet:
    return Wallet(
        organization_id=r["organization_id"],
        balance=to_money(r["balance"]),
        currency=r["currency"],
        created_at=float(r["created_at"]),
        updated_at=float(r["updated_at"]),
    )


def _row_to_tx(r) -> Transaction:
    return Transaction(
        tx_id=r["tx_id"],
        organization_id=r["organization_id"],
        tx_type=r["tx_type"],
        amount=to_money(r["amount"]),
        balance_after=to_money(r["balance_after"]),
        instance_id=r["instance_id"],
        hours=to_money(r["hours"]) if r["hours"] is not None else None,
        description=r["description"],
        created_at=float(r["created_at"]),
    )


class WalletLedger:
    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_db()

    # ── In-transaction primitives (shared with the billing engine) ────

    def lock_wallet(self, conn, organization_id: str) -> Optional[Wallet]:
        row = conn.execute(
            f"SELECT * FROM wallets WHERE organization_id = ?{self.db.for_update}",
            (organization_id,),
        ).fetchone()
        return _row_to_wallet(row) if row else None

    def _ensure_wallet(self, conn, organization_id: str) -> Wallet:
        wallet = self.lock_wallet(conn, organization_id)
        if wallet is not None:
            return wallet
        now = time.time()
        conn.execute(
            """INSERT INTO wallets (organization_id, balance, currency, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?)""",
            (organization_id, self.db.encode_money(0), DEFAULT_CURRENCY, now, now),
        )
        return Wallet(organization_id=organization_id, created_at=now, updated_at=now)

    def _apply(self, conn, wallet: Wallet, tx_type: TxType, amount: Decimal,
               description: str, instance_id: Optional[str] = None,
               hours: Optional[Decimal] = None, now: Optional[float] = None) -> Transaction:
        """Write the ledger row and the new balance. ``amount`` is signed."""
        now = now if now is not None else time.time()
        new_balance = to_money(wallet.balance + amount)
        if new_balance < 0:
            raise InsufficientFunds(
                f"Wallet {wallet.organization_id} balance ${wallet.balance} "
                f"cannot cover ${-amount}"
            )
        tx = Transaction(
            tx_id=_new_tx_id(),
            organization_id=wallet.organization_id,
            tx_type=tx_type.value,
            amount=to_money(amount),
            balance_after=new_balance,
            instance_id=instance_id,
            hours=to_money(hours) if hours is not None else None,
            description=description,
            created_at=now,
        )
        conn.execute(
            "UPDATE wallets SET balance = ?, updated_at = ? WHERE organization_id = ?",
            (self.db.encode_money(new_balance), now, wallet.organization_id),
        )
        conn.execute(
            """INSERT INTO wallet_transactions
               (tx_id, organization_id, tx_type, amount, balance_after,
                instance_id, hours, description, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (tx.tx_id, tx.organization_id, tx.tx_type,
             self.db.encode_money(tx.amount), self.db.encode_money(tx.balance_after),
             instance_id,
             self.db.encode_money(tx.hours) if tx.hours is not None else None,
             description, now),
        )
        wallet.balance = new_balance
        wallet.updated_at = now
        return tx

    def debit_in_tx(self, conn, wallet: Wallet, amount, description: str,
                    instance_id: Optional[str] = None, hours=None,
                    now: Optional[float] = None) -> Transaction:
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Charge amount must be positive", field="amount")
        return self._apply(conn, wallet, TxType.CHARGE, -amount, description,
                           instance_id=instance_id, hours=hours, now=now)

    # ── Public operations ─────────────────────────────────────────────

    def get_wallet(self, organization_id: str) -> Wallet:
        """Get or create an organization's wallet."""
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM wallets WHERE organization_id = ?", (organization_id,)
            ).fetchone()
        if row:
            return _row_to_wallet(row)
        with self.db.transaction() as conn:
            return self._ensure_wallet(conn, organization_id)

    def credit(self, organization_id: str, amount, description: str = "Wallet top-up",
               tx_type: TxType = TxType.CREDIT) -> Transaction:
        """Payment-capture entry point: add funds to a wallet."""
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Credit amount must be positive", field="amount")
        with self.db.transaction() as conn:
            wallet = self._ensure_wallet(conn, organization_id)
            tx = self._apply(conn, wallet, tx_type, amount, description)
        log.info("CREDIT %s +$%s balance=$%s", organization_id, amount, tx.balance_after)
        from events import EventType, record_activity
        record_activity(
            EventType.WALLET_CREDITED, entity_type="wallet", entity_id=organization_id,
            organization_id=organization_id, status="success",
            message=f"Wallet credited ${amount}",
            data={"tx_id": tx.tx_id, "amount": str(amount),
                  "balance_after": str(tx.balance_after)},
            db=self.db,
        )
        return tx

    def history(self, organization_id: str, limit: int = 50) -> list[Transaction]:
        with self.db.connection() as conn:
            rows = conn.execute(
                """SELECT * FROM wallet_transactions WHERE organization_id = ?
                   ORDER BY created_at DESC, tx_id DESC LIMIT ?""",
                (organization_id, limit),
            ).fetchall()
        return [_row_to_tx(r) for r in rows]

    def transactions_for_instance(self, instance_id: str) -> list[Transaction]:
        with self.db.connection() as conn:
            rows = conn.execute(
                """SELECT * FROM wallet_transactions WHERE instance_id = ?
                   ORDER BY created_at ASC, tx_id ASC""",
                (instance_id,),
            ).fetchall()
        return [_row_to_tx(r) for r in rows]

    def verify_wallet(self, organization_id: str) -> dict:
        """Reconcile: the sum of ledger entries must equal the stored balance."""
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT balance FROM wallets WHERE organization_id = ?", (organization_id,)
            ).fetchone()
            amounts = conn.execute(
                "SELECT amount FROM wallet_transactions WHERE organization_id = ?",
                (organization_id,),
            ).fetchall()
        balance = to_money(row["balance"]) if row else to_money(0)
        ledger_sum = to_money(sum((to_money(r["amount"]) for r in amounts), Decimal("0")))
        return {
            "organization_id": organization_id,
            "balance": str(balance),
            "ledger_sum": str(ledger_sum),
            "transactions": len(amounts),
            "consistent": balance == ledger_sum and balance >= 0,
        }
