# Stratus SSH Key Sync: one logical key, registered on every provider kind
#
# There is no transaction spanning two clouds, so every operation is
# best-effort per provider and reports a result per kind:
#   synced   the provider accepted the key (its key id is stored)
#   failed   the provider rejected or could not be reached (id stays null)
#   skipped  no active provider of that kind is configured (on delete, a kind
#            holding a stored key id reports failed instead)
# The local record is kept whatever the providers answered, and failed kinds
# can be retried later without re-adding the key.

import base64
import binascii
import hashlib
import logging
import struct
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Optional

from catalog import CatalogStore
from db import Database, get_db
from errors import (
    CredentialConflict,
    CredentialNotFound,
    Forbidden,
    InvalidCredentialFormat,
    ProviderNotFound,
    StratusError,
    UpstreamValidation,
    ValidationError,
)
from events import ActivityStatus, EventType, record_activity
from providers import ProviderService, get_provider_service_by_kind, supported_provider_kinds

log = logging.getLogger("stratus")

KEY_TYPES = {
    "ssh-rsa",
    "ssh-dss",
    "ssh-ed25519",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
    "sk-ssh-ed25519@openssh.com",
    "sk-ecdsa-sha2-nistp256@openssh.com",
}

SYNCED = "synced"
FAILED = "failed"
SKIPPED = "skipped"
DELETED = "deleted"


# ── Key parsing ──────────────────────────────────────────────────────


@dataclass
class ParsedKey:
    key_type: str
    blob: bytes
    comment: str = ""

    @property
    def fingerprint(self) -> str:
        digest = hashlib.sha256(self.blob).digest()
        return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")

    @property
    def openssh(self) -> str:
        line = f"{self.key_type} {base64.b64encode(self.blob).decode('ascii')}"
        return f"{line} {self.comment}" if self.comment else line


def parse_public_key(public_key: str) -> ParsedKey:
    """Parse an OpenSSH public key line. Raises InvalidCredentialFormat."""
    parts = (public_key or "").strip().split(None, 2)
    if len(parts) < 2:
        raise InvalidCredentialFormat("Expected '<type> <base64> [comment]'", field="public_key")
    key_type, body = parts[0], parts[1]
    if key_type not in KEY_TYPES:
        raise InvalidCredentialFormat(f"Unsupported key type: {key_type}", field="public_key")
    try:
        blob = base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidCredentialFormat("Key body is not valid base64", field="public_key")

    # The blob starts with its own length-prefixed type string
    if len(blob) < 4:
        raise InvalidCredentialFormat("Key body is truncated", field="public_key")
    (n,) = struct.unpack(">I", blob[:4])
    embedded = blob[4:4 + n]
    if len(embedded) != n or embedded.decode("ascii", "replace") != key_type:
        raise InvalidCredentialFormat("Key body does not match its declared type",
                                      field="public_key")
    return ParsedKey(key_type=key_type, blob=blob, comment=parts[2].strip() if len(parts) > 2 else "")


def fingerprint(public_key: str) -> str:
    return parse_public_key(public_key).fingerprint


# ── Records ──────────────────────────────────────────────────────────


@dataclass
class SyncResult:
    kind: str
    status: str
    key_id: Optional[str] = None
    error_code: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (SYNCED, DELETED)

    def to_dict(self) -> dict:
        d = {"status": self.status, "key_id": self.key_id}
        if self.error_code:
            d["error_code"] = self.error_code
            d["error"] = self.error
        return d


@dataclass
class UserSshKey:
    key_id: str = field(default_factory=lambda: f"key-{uuid.uuid4().hex[:12]}")
    user_id: str = ""
    name: str = ""
    public_key: str = ""
    fingerprint: str = ""
    provider_key_ids: dict = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "id": self.key_id,
            "user_id": self.user_id,
            "name": self.name,
            "public_key": self.public_key,
            "fingerprint": self.fingerprint,
            "provider_key_ids": dict(self.provider_key_ids),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def _row_to_key(db: Database, r) -> UserSshKey:
    return UserSshKey(
        key_id=r["key_id"],
        user_id=r["user_id"],
        name=r["name"],
        public_key=r["public_key"],
        fingerprint=r["fingerprint"],
        provider_key_ids=db.decode_json(r["provider_key_ids"], {}),
        created_at=float(r["created_at"]),
        updated_at=float(r["updated_at"]),
    )


ServiceForKind = Callable[[str], ProviderService]


class CredentialSyncService:
    def __init__(self, db: Optional[Database] = None,
                 catalog: Optional[CatalogStore] = None,
                 service_for_kind: Optional[ServiceForKind] = None,
                 kinds: Optional[list] = None):
        self.db = db or get_db()
        self.catalog = catalog or CatalogStore(self.db)
        self._service_for_kind = service_for_kind or (
            lambda kind: get_provider_service_by_kind(kind, self.catalog)
        )
        self.kinds = list(kinds) if kinds is not None else supported_provider_kinds()

    # ── Fan-out ───────────────────────────────────────────────────────

    def _run_one(self, kind: str, op: Callable[[str, ProviderService], Optional[str]],
                 ok_status: str) -> SyncResult:
        try:
            svc = self._service_for_kind(kind)
        except ProviderNotFound as e:
            if ok_status == DELETED:
                # The key was registered there once; removing it now is impossible
                return SyncResult(kind=kind, status=FAILED, error_code=e.code,
                                  error=f"no {kind} provider configured; upstream key left in place")
            return SyncResult(kind=kind, status=SKIPPED)
        except StratusError as e:
            return SyncResult(kind=kind, status=FAILED, error_code=e.code, error=e.message)
        try:
            key_id = op(kind, svc)
        except UpstreamValidation as e:
            if ok_status == DELETED and e.status == 404:
                return SyncResult(kind=kind, status=DELETED)
            return SyncResult(kind=kind, status=FAILED, error_code=e.code, error=e.message)
        except StratusError as e:
            return SyncResult(kind=kind, status=FAILED, error_code=e.code, error=e.message)
        except Exception as e:
            log.error("SSH KEY SYNC %s raised: %s", kind, e, exc_info=True)
            return SyncResult(kind=kind, status=FAILED, error_code="internal_error", error=str(e))
        return SyncResult(kind=kind, status=ok_status,
                          key_id=str(key_id) if key_id is not None else None)

    def _fan_out(self, kinds: list, op, ok_status: str) -> dict:
        """Run ``op`` against every kind concurrently. Returns {kind: SyncResult}."""
        if not kinds:
            return {}
        with ThreadPoolExecutor(max_workers=len(kinds), thread_name_prefix="ssh-sync") as pool:
            futures = {k: pool.submit(self._run_one, k, op, ok_status) for k in kinds}
            results = {k: f.result() for k, f in futures.items()}
        for r in results.values():
            if r.status == FAILED:
                log.warning("SSH KEY SYNC FAILED kind=%s: %s", r.kind, r.error)
        return results

    @staticmethod
    def _warnings(results: dict) -> list[str]:
        return [f"{r.kind}: {r.error}" for r in results.values() if r.status == FAILED]

    def _rollback_upstream(self, results: dict):
        created = [k for k, r in results.items() if r.status == SYNCED and r.key_id]
        if not created:
            return
        ids = {k: results[k].key_id for k in created}
        undone = self._fan_out(created, lambda k, svc: svc.delete_ssh_key(ids[k]), DELETED)
        for k, r in undone.items():
            if not r.ok:
                log.error("SSH KEY ORPHANED kind=%s id=%s: %s", k, ids[k], r.error)

    # ── Lookup ────────────────────────────────────────────────────────

    def _find_by_fingerprint(self, user_id: str, fp: str) -> Optional[UserSshKey]:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM user_ssh_keys WHERE user_id = ? AND fingerprint = ?",
                (user_id, fp),
            ).fetchone()
        return _row_to_key(self.db, row) if row else None

    def get_key(self, user_id: str, key_id: str) -> UserSshKey:
        """Owned key or CredentialNotFound / Forbidden."""
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM user_ssh_keys WHERE key_id = ?", (key_id,)
            ).fetchone()
        if row is None:
            raise CredentialNotFound(f"SSH key not found: {key_id}")
        if row["user_id"] != user_id:
            raise Forbidden(f"SSH key {key_id} belongs to another user")
        return _row_to_key(self.db, row)

    def list_keys(self, user_id: str) -> list[UserSshKey]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM user_ssh_keys WHERE user_id = ? ORDER BY created_at ASC",
                (user_id,),
            ).fetchall()
        return [_row_to_key(self.db, r) for r in rows]

    # ── Operations ────────────────────────────────────────────────────

    def add(self, user_id: str, name: str, public_key: str) -> dict:
        """Register a key locally and on every provider kind.

        Provider failures come back as warnings; only a failed local write
        raises (after deleting whatever was created upstream).
        """
        if not user_id:
            raise ValidationError("user_id is required", field="user_id")
        parsed = parse_public_key(public_key)
        name = (name or parsed.comment or parsed.key_type).strip()
        if self._find_by_fingerprint(user_id, parsed.fingerprint) is not None:
            raise CredentialConflict(f"SSH key {parsed.fingerprint} already registered")

        material = parsed.openssh
        results = self._fan_out(self.kinds,
                                lambda k, svc: svc.create_ssh_key(name, material), SYNCED)
        key = UserSshKey(
            user_id=user_id,
            name=name,
            public_key=material,
            fingerprint=parsed.fingerprint,
            provider_key_ids={k: r.key_id if r.status == SYNCED else None
                              for k, r in results.items()},
        )
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """INSERT INTO user_ssh_keys
                       (key_id, user_id, name, public_key, fingerprint,
                        provider_key_ids, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (key.key_id, key.user_id, key.name, key.public_key,
                     key.fingerprint, self.db.encode_json(key.provider_key_ids),
                     key.created_at, key.updated_at),
                )
        except Exception as e:
            log.error("SSH KEY ADD failed locally for user=%s: %s", user_id, e)
            self._rollback_upstream(results)
            if self._find_by_fingerprint(user_id, parsed.fingerprint) is not None:
                raise CredentialConflict(
                    f"SSH key {parsed.fingerprint} already registered") from e
            raise

        warnings = self._warnings(results)
        record_activity(
            EventType.CREDENTIAL_SYNC_PARTIAL if warnings else EventType.CREDENTIAL_ADDED,
            entity_type="ssh_key", entity_id=key.key_id, user_id=user_id,
            actor=f"user:{user_id}",
            status=ActivityStatus.WARNING if warnings else ActivityStatus.SUCCESS,
            message=(f"SSH key {name} added; sync failed on {len(warnings)} provider(s)"
                     if warnings else f"SSH key {name} added"),
            data={"fingerprint": key.fingerprint,
                  "per_provider_status": {k: r.to_dict() for k, r in results.items()}},
            db=self.db,
        )
        log.info("SSH KEY ADDED %s user=%s fp=%s", key.key_id, user_id, key.fingerprint)
        return {
            "id": key.key_id,
            "fingerprint": key.fingerprint,
            "per_provider_status": {k: r.to_dict() for k, r in results.items()},
            "warnings": warnings,
        }

    def delete(self, user_id: str, key_id: str) -> dict:
        """Remove a key from every provider that has it, then locally.

        Upstream failures are reported; the local record goes regardless.
        """
        key = self.get_key(user_id, key_id)
        present = {k: v for k, v in key.provider_key_ids.items() if v}
        results = self._fan_out(list(present),
                                lambda k, svc: svc.delete_ssh_key(present[k]), DELETED)
        for k in key.provider_key_ids:
            if k not in results:
                results[k] = SyncResult(kind=k, status=SKIPPED)

        with self.db.transaction() as conn:
            conn.execute("DELETE FROM user_ssh_keys WHERE key_id = ? AND user_id = ?",
                         (key_id, user_id))

        warnings = self._warnings(results)
        record_activity(
            EventType.CREDENTIAL_DELETED,
            entity_type="ssh_key", entity_id=key_id, user_id=user_id,
            actor=f"user:{user_id}",
            status=ActivityStatus.WARNING if warnings else ActivityStatus.SUCCESS,
            message=(f"SSH key {key.name} deleted; upstream removal failed on "
                     f"{len(warnings)} provider(s)" if warnings
                     else f"SSH key {key.name} deleted"),
            data={"per_provider_status": {k: r.to_dict() for k, r in results.items()}},
            db=self.db,
        )
        log.info("SSH KEY DELETED %s user=%s", key_id, user_id)
        return {
            "id": key_id,
            "deleted": True,
            "per_provider_status": {k: r.to_dict() for k, r in results.items()},
            "warnings": warnings,
        }

    def retry_sync(self, user_id: str, key_id: str) -> dict:
        """Re-register a key on the kinds where it has no provider id yet."""
        key = self.get_key(user_id, key_id)
        missing = [k for k in self.kinds if not key.provider_key_ids.get(k)]
        results = self._fan_out(missing,
                                lambda k, svc: svc.create_ssh_key(key.name, key.public_key), SYNCED)

        synced = {k: r.key_id for k, r in results.items() if r.status == SYNCED}
        with self.db.transaction() as conn:
            row = conn.execute(
                f"SELECT provider_key_ids FROM user_ssh_keys WHERE key_id = ?{self.db.for_update}",
                (key_id,),
            ).fetchone()
            if row is not None:
                ids = self.db.decode_json(row["provider_key_ids"], {})
                for k in missing:
                    ids[k] = synced.get(k) or ids.get(k)
                conn.execute(
                    "UPDATE user_ssh_keys SET provider_key_ids = ?, updated_at = ? WHERE key_id = ?",
                    (self.db.encode_json(ids), time.time(), key_id),
                )
        if row is None:
            self._rollback_upstream(results)
            raise CredentialNotFound(f"SSH key not found: {key_id}")

        warnings = self._warnings(results)
        if warnings:
            record_activity(
                EventType.CREDENTIAL_SYNC_PARTIAL,
                entity_type="ssh_key", entity_id=key_id, user_id=user_id,
                actor=f"user:{user_id}", status=ActivityStatus.WARNING,
                message=f"SSH key {key.name} retry failed on {len(warnings)} provider(s)",
                data={"per_provider_status": {k: r.to_dict() for k, r in results.items()}},
                db=self.db,
            )
        return {
            "id": key_id,
            "per_provider_status": {k: r.to_dict() for k, r in results.items()},
            "warnings": warnings,
        }


_credential_service: Optional[CredentialSyncService] = None


def get_credential_service() -> CredentialSyncService:
    global _credential_service
    if _credential_service is None:
        _credential_service = CredentialSyncService()
    return _credential_service
