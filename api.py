# Stratus API v1.0.0
# FastAPI. Providers, instances, billing, wallets, SSH keys. No fluff.

import hmac
import json
import os
import time
from decimal import Decimal
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware

from billing import BillingEngine
from catalog import CatalogStore
from daemon_status import DaemonStatusService
from db import get_db
from errors import RateLimited, StratusError, user_message
from events import EventStore, EventType, record_activity
from instances import InstanceStore
from providers import (
    CreateInstanceSpec,
    get_provider_service,
    get_provider_service_by_kind,
    resource_cache,
    supported_provider_kinds,
)
from scheduler import get_metrics_snapshot, log, storage_healthcheck
from ssh_keys import CredentialSyncService
from vps import InstanceService
from wallets import WalletLedger

VERSION = "1.0.0"

app = FastAPI(title="Stratus", version=VERSION)

STRATUS_ENV = os.environ.get("STRATUS_ENV", "dev").lower()
AUTH_REQUIRED = STRATUS_ENV not in {"dev", "development", "test"}
API_TOKEN = os.environ.get("STRATUS_API_TOKEN", "")

# Overridable (provider, token) -> client factory; None uses the real adapters.
provider_client_factory = None


# ── API Token Auth ───────────────────────────────────────────────────

# Public routes, no token required
PUBLIC_PATHS = {"/", "/docs", "/openapi.json", "/healthz", "/readyz", "/metrics"}


class TokenAuthMiddleware(BaseHTTPMiddleware):
    """
    Bearer token auth. Outside dev/test every request (except public
    routes) must carry STRATUS_API_TOKEN.
    """

    async def dispatch(self, request: Request, call_next):
        if not AUTH_REQUIRED:
            return await call_next(request)

        api_token = os.environ.get("STRATUS_API_TOKEN", API_TOKEN)
        if not api_token:
            return JSONResponse(
                status_code=500,
                content={
                    "ok": False,
                    "error": {
                        "code": "auth_config_error",
                        "message": "STRATUS_API_TOKEN must be set in non-dev environments",
                    },
                },
            )

        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        auth = request.headers.get("Authorization", "")
        token = auth[7:] if auth.startswith("Bearer ") else ""

        if not token or not hmac.compare_digest(token, api_token):
            return JSONResponse(
                status_code=401,
                content={"ok": False, "error": {"code": "unauthorized", "message": "Unauthorized"}},
            )

        return await call_next(request)


app.add_middleware(TokenAuthMiddleware)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Emit structured access logs for observability."""

    async def dispatch(self, request: Request, call_next):
        started = time.time()
        response = await call_next(request)
        duration_ms = round((time.time() - started) * 1000, 2)
        entry = {
            "event": "api_request",
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "client_ip": request.client.host if request.client else "unknown",
        }
        log.info(json.dumps(entry, sort_keys=True))
        return response


app.add_middleware(RequestLogMiddleware)


@app.exception_handler(StratusError)
async def stratus_exception_handler(_: Request, exc: StratusError):
    headers = {}
    if isinstance(exc, RateLimited) and exc.retry_after:
        headers["Retry-After"] = str(int(exc.retry_after))
    return JSONResponse(
        status_code=exc.http_status,
        content={"ok": False, "error": {**exc.to_dict(), "user_message": user_message(exc)}},
        headers=headers or None,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": {"code": "http_error", "message": str(exc.detail)}},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "ok": False,
            "error": {
                "code": "validation_error",
                "message": "Request validation failed",
                "details": json.loads(json.dumps(exc.errors(), default=str)),
            },
        },
    )


# ── Wiring ────────────────────────────────────────────────────────────


def _catalog() -> CatalogStore:
    return CatalogStore(get_db())


def _provider_service(provider_id: str):
    return get_provider_service(provider_id, _catalog(), client_factory=provider_client_factory)


def _instance_service() -> InstanceService:
    db = get_db()
    return InstanceService(db, CatalogStore(db), service_factory=_provider_service)


def _credential_service() -> CredentialSyncService:
    db = get_db()
    catalog = CatalogStore(db)
    return CredentialSyncService(
        db, catalog,
        service_for_kind=lambda kind: get_provider_service_by_kind(
            kind, catalog, client_factory=provider_client_factory),
    )


def _require_user(x_user_id: Optional[str]) -> str:
    if not x_user_id:
        raise HTTPException(status_code=400, detail="X-User-Id header required")
    return x_user_id


# ── Request models ────────────────────────────────────────────────────


class ProviderIn(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    kind: str
    api_token: str = ""
    active: bool = True
    allowed_regions: list[str] = []


class ActiveToggle(BaseModel):
    active: bool


class TokenIn(BaseModel):
    api_token: str


class PlanIn(BaseModel):
    provider_id: str
    upstream_plan_id: str
    base_hourly: Decimal = Field(ge=0)
    markup_hourly: Decimal = Field(default=Decimal("0"), ge=0)
    label: str = ""
    vcpus: int = Field(default=0, ge=0)
    memory_mb: int = Field(default=0, ge=0)
    disk_gb: int = Field(default=0, ge=0)
    transfer_gb: int = Field(default=0, ge=0)
    stopped_rate_factor: Decimal = Field(default=Decimal("1"), ge=0, le=1)


class InstanceIn(BaseModel):
    organization_id: str = Field(min_length=1)
    plan_id: str
    label: str = Field(min_length=1, max_length=64)
    region: str
    image: Optional[str] = None
    app_image: Optional[str] = None
    root_password: Optional[str] = None
    authorized_keys: list[str] = []
    ssh_key_ids: list[str] = []
    backups: bool = False
    monitoring: bool = False
    private_networking: bool = False
    ipv6: bool = False
    tags: list[str] = []
    app_data: dict = {}


class ActionIn(BaseModel):
    action: str


class CreditIn(BaseModel):
    amount: Decimal = Field(gt=0)
    description: str = "Wallet top-up"


class SshKeyIn(BaseModel):
    name: str = ""
    public_key: str = Field(min_length=1)


# ── Providers ─────────────────────────────────────────────────────────


@app.post("/providers")
def api_add_provider(p: ProviderIn):
    provider = _catalog().add_provider(p.name, p.kind, p.api_token, active=p.active,
                                       allowed_regions=p.allowed_regions)
    return {"ok": True, "provider": provider.to_dict()}


@app.get("/providers")
def api_list_providers(active_only: bool = False):
    return {
        "ok": True,
        "providers": [p.to_dict() for p in _catalog().list_providers(active_only=active_only)],
        "supported_kinds": supported_provider_kinds(),
    }


@app.patch("/providers/{provider_id}/active")
def api_set_provider_active(provider_id: str, toggle: ActiveToggle):
    provider = _catalog().set_provider_active(provider_id, toggle.active)
    resource_cache.invalidate(provider_id)
    record_activity(
        EventType.PROVIDER_UPDATED, entity_type="provider", entity_id=provider_id,
        message=f"Provider {provider.name} {'activated' if toggle.active else 'deactivated'}",
        data={"active": toggle.active}, db=get_db(),
    )
    return {"ok": True, "provider": provider.to_dict()}


@app.patch("/providers/{provider_id}/token")
def api_set_provider_token(provider_id: str, body: TokenIn):
    provider = _catalog().set_provider_token(provider_id, body.api_token)
    resource_cache.invalidate(provider_id)
    record_activity(
        EventType.PROVIDER_UPDATED, entity_type="provider", entity_id=provider_id,
        message=f"Provider {provider.name} credentials rotated", db=get_db(),
    )
    return {"ok": True, "provider": provider.to_dict()}


@app.post("/providers/{provider_id}/validate")
def api_validate_provider(provider_id: str):
    valid = _provider_service(provider_id).validate_credentials()
    return {"ok": True, "provider_id": provider_id, "valid": valid}


@app.get("/providers/{provider_id}/plans")
def api_provider_plans(provider_id: str):
    return {"ok": True, "plans": [p.to_dict() for p in _provider_service(provider_id).get_plans()]}


@app.get("/providers/{provider_id}/images")
def api_provider_images(provider_id: str):
    return {"ok": True, "images": [i.to_dict() for i in _provider_service(provider_id).get_images()]}


@app.get("/providers/{provider_id}/regions")
def api_provider_regions(provider_id: str):
    return {"ok": True, "regions": [r.to_dict() for r in _provider_service(provider_id).get_regions()]}


# ── Plans ─────────────────────────────────────────────────────────────


@app.post("/plans")
def api_add_plan(p: PlanIn):
    plan = _catalog().add_plan(
        p.provider_id, p.upstream_plan_id, p.base_hourly, p.markup_hourly,
        label=p.label, vcpus=p.vcpus, memory_mb=p.memory_mb, disk_gb=p.disk_gb,
        transfer_gb=p.transfer_gb, stopped_rate_factor=p.stopped_rate_factor,
    )
    return {"ok": True, "plan": plan.to_dict()}


@app.get("/plans")
def api_list_plans(provider_id: Optional[str] = None):
    return {"ok": True, "plans": [p.to_dict() for p in _catalog().list_plans(provider_id)]}


# ── Instances ─────────────────────────────────────────────────────────


@app.post("/providers/{provider_id}/instances")
def api_create_instance(provider_id: str, body: InstanceIn):
    spec = CreateInstanceSpec(
        label=body.label, plan="", region=body.region, image=body.image,
        app_image=body.app_image, root_password=body.root_password,
        authorized_keys=body.authorized_keys, ssh_key_ids=body.ssh_key_ids,
        backups=body.backups, monitoring=body.monitoring,
        private_networking=body.private_networking, ipv6=body.ipv6,
        tags=body.tags, app_data=body.app_data,
    )
    created = _instance_service().create_instance(provider_id, body.organization_id,
                                                  body.plan_id, spec)
    return {"ok": True, "instance": created}


@app.get("/providers/{provider_id}/instances")
def api_list_upstream_instances(provider_id: str):
    return {"ok": True, "instances": _instance_service().list_instances(provider_id)}


@app.get("/providers/{provider_id}/instances/{external_id}")
def api_get_upstream_instance(provider_id: str, external_id: str):
    return {"ok": True, "instance": _instance_service().get_instance(provider_id, external_id)}


@app.post("/providers/{provider_id}/instances/{external_id}/actions")
def api_instance_action(provider_id: str, external_id: str, body: ActionIn,
                        x_user_id: Optional[str] = Header(default=None)):
    actor = f"user:{x_user_id}" if x_user_id else "api"
    ack = _instance_service().perform_action(provider_id, external_id, body.action, actor=actor)
    return {"ok": True, **ack}


@app.get("/instances")
def api_list_local_instances(organization_id: Optional[str] = None,
                             provider_id: Optional[str] = None,
                             include_deleted: bool = False):
    items = InstanceStore(get_db()).list_instances(organization_id=organization_id,
                                                   provider_id=provider_id,
                                                   include_deleted=include_deleted)
    return {"ok": True, "instances": [i.to_dict() for i in items]}


@app.get("/instances/{instance_id}")
def api_get_local_instance(instance_id: str):
    return {"ok": True, "instance": InstanceStore(get_db()).require(instance_id).to_dict()}


@app.get("/instances/{instance_id}/charges")
def api_instance_charges(instance_id: str):
    """Ledger entries billed against one instance, oldest first."""
    db = get_db()
    InstanceStore(db).require(instance_id)
    txs = WalletLedger(db).transactions_for_instance(instance_id)
    return {"ok": True, "instance_id": instance_id, "charges": [t.to_dict() for t in txs]}


@app.post("/instances/{instance_id}/sync")
def api_sync_instance(instance_id: str):
    inst = _instance_service().sync_instance(instance_id)
    return {"ok": True, "instance": inst.to_dict()}


# ── Billing ───────────────────────────────────────────────────────────


@app.post("/billing/run")
def api_run_billing():
    """Run one billing pass now. Safe alongside the daemon."""
    db = get_db()
    svc = _instance_service()
    result = BillingEngine(db, suspender=svc.request_suspension).run_billing_pass()
    return {"ok": True, **result.to_dict()}


@app.get("/billing/daemon-status")
def api_daemon_status():
    return {"ok": True, "daemon": DaemonStatusService(get_db()).get_status()}


@app.get("/billing/burn-rate/{organization_id}")
def api_burn_rate(organization_id: str):
    return {"ok": True, **BillingEngine(get_db()).burn_rate(organization_id)}


# ── Wallets ───────────────────────────────────────────────────────────


@app.get("/wallets/{organization_id}")
def api_get_wallet(organization_id: str):
    return {"ok": True, "wallet": WalletLedger(get_db()).get_wallet(organization_id).to_dict()}


@app.get("/wallets/{organization_id}/transactions")
def api_wallet_transactions(organization_id: str, limit: int = 50):
    txs = WalletLedger(get_db()).history(organization_id, limit=max(1, min(limit, 500)))
    return {"ok": True, "transactions": [t.to_dict() for t in txs]}


@app.post("/wallets/{organization_id}/credit")
def api_credit_wallet(organization_id: str, body: CreditIn):
    tx = WalletLedger(get_db()).credit(organization_id, body.amount, body.description)
    return {"ok": True, "transaction": tx.to_dict()}


@app.get("/wallets/{organization_id}/verify")
def api_verify_wallet(organization_id: str):
    return {"ok": True, **WalletLedger(get_db()).verify_wallet(organization_id)}


# ── SSH keys ──────────────────────────────────────────────────────────


@app.get("/ssh-keys")
def api_list_ssh_keys(x_user_id: Optional[str] = Header(default=None)):
    user_id = _require_user(x_user_id)
    return {"ok": True, "keys": [k.to_dict() for k in _credential_service().list_keys(user_id)]}


@app.post("/ssh-keys")
def api_add_ssh_key(body: SshKeyIn, x_user_id: Optional[str] = Header(default=None)):
    user_id = _require_user(x_user_id)
    return {"ok": True, **_credential_service().add(user_id, body.name, body.public_key)}


@app.delete("/ssh-keys/{key_id}")
def api_delete_ssh_key(key_id: str, x_user_id: Optional[str] = Header(default=None)):
    user_id = _require_user(x_user_id)
    return {"ok": True, **_credential_service().delete(user_id, key_id)}


@app.post("/ssh-keys/{key_id}/sync")
def api_retry_ssh_key_sync(key_id: str, x_user_id: Optional[str] = Header(default=None)):
    user_id = _require_user(x_user_id)
    return {"ok": True, **_credential_service().retry_sync(user_id, key_id)}


# ── Activity ──────────────────────────────────────────────────────────


@app.get("/activity")
def api_activity(entity_type: Optional[str] = None, entity_id: Optional[str] = None,
                 event_type: Optional[str] = None, organization_id: Optional[str] = None,
                 limit: int = 100):
    events = EventStore(get_db()).get_events(
        entity_type=entity_type, entity_id=entity_id, event_type=event_type,
        organization_id=organization_id, limit=max(1, min(limit, 1000)),
    )
    return {"ok": True, "events": [e.to_dict() for e in events]}


@app.get("/activity/verify")
def api_verify_activity():
    return {"ok": True, **EventStore(get_db()).verify_chain()}


# ── Health ────────────────────────────────────────────────────────────


@app.get("/healthz")
def healthz():
    return {"ok": True, "status": "healthy", "env": STRATUS_ENV}


@app.get("/readyz")
def readyz():
    token = os.environ.get("STRATUS_API_TOKEN", API_TOKEN)
    if AUTH_REQUIRED and not token:
        raise HTTPException(
            status_code=503, detail="API token not configured for non-dev environment"
        )

    storage = storage_healthcheck(get_db())
    if not storage.get("ok"):
        raise HTTPException(
            status_code=503, detail=f"Storage not ready: {storage.get('error', 'unknown')}"
        )

    return {"ok": True, "status": "ready", "storage": storage}


@app.get("/metrics")
def metrics():
    snapshot = get_metrics_snapshot(get_db())
    snapshot["provider_cache"] = resource_cache.stats()
    return {"ok": True, "metrics": snapshot}


@app.get("/")
def root():
    return {"name": "Stratus", "version": VERSION, "status": "running"}


def start_background_workers():
    """Builtin billing fallback + periodic upstream status sync."""
    from scheduler import BUILTIN_BILLING_ENABLED, start_billing_monitor, start_status_sync_monitor

    if BUILTIN_BILLING_ENABLED:
        start_billing_monitor()
    else:
        log.info("Builtin billing disabled (STRATUS_BUILTIN_BILLING=0)")
    start_status_sync_monitor()


if __name__ == "__main__":
    import uvicorn

    from scheduler import setup_logging

    setup_logging()
    start_background_workers()
    log.info("API STARTING on port 8000")
    uvicorn.run(app, host="0.0.0.0", port=8000)
