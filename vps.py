# Stratus VPS Lifecycle Service
# Ties the provider abstraction layer to the resource instance store:
# create → persist as provisioning, actions → fire-and-forget upstream,
# sync → apply confirmed upstream status through the state machine.
#
# request_suspension() is the lifecycle mutator the billing engine calls when
# a wallet runs dry. It never raises.

import logging
import time
from typing import Callable, Optional

from catalog import CatalogStore
from db import Database, get_db
from errors import (
    ProviderError,
    StratusError,
    UpstreamValidation,
    ValidationError,
)
from events import ActivityStatus, EventType, record_activity
from instances import InstanceStatus, InstanceStore, ResourceInstance
from providers import CreateInstanceSpec, ProviderService, get_provider_service

log = logging.getLogger("stratus")

# Upstream statuses that map onto a local state. Anything else is ignored.
UPSTREAM_TO_LOCAL = {
    "provisioning": InstanceStatus.PROVISIONING,
    "running": InstanceStatus.RUNNING,
    "rebooting": InstanceStatus.RUNNING,
    "stopped": InstanceStatus.STOPPED,
    "error": InstanceStatus.ERROR,
    "deleted": InstanceStatus.DELETED,
}


class InstanceService:
    def __init__(self, db: Optional[Database] = None,
                 catalog: Optional[CatalogStore] = None,
                 service_factory: Optional[Callable[[str], ProviderService]] = None):
        self.db = db or get_db()
        self.catalog = catalog or CatalogStore(self.db)
        self.store = InstanceStore(self.db)
        self._service_factory = service_factory

    def _service(self, provider_id: str) -> ProviderService:
        if self._service_factory is not None:
            return self._service_factory(provider_id)
        return get_provider_service(provider_id, catalog=self.catalog)

    # ── Create / read ─────────────────────────────────────────────────

    def create_instance(self, provider_id: str, organization_id: str, plan_id: str,
                        spec: CreateInstanceSpec) -> dict:
        """Provision upstream, then record locally with checkpoint = created_at."""
        plan = self.catalog.require_plan(plan_id)
        if plan.provider_id != provider_id:
            raise ValidationError(f"Plan {plan_id} does not belong to provider {provider_id}",
                                  field="plan_id")
        if not plan.active:
            raise ValidationError(f"Plan {plan_id} is not available", field="plan_id")
        if not organization_id:
            raise ValidationError("organization_id is required", field="organization_id")
        spec.plan = spec.plan or plan.upstream_plan_id

        svc = self._service(provider_id)
        remote = svc.create_instance(spec)

        now = time.time()
        inst = ResourceInstance(
            organization_id=organization_id,
            provider_id=provider_id,
            external_id=remote.external_id,
            plan_id=plan_id,
            label=remote.label or spec.label,
            region=remote.region or spec.region,
            status=InstanceStatus.PROVISIONING.value,
            ipv4=list(remote.ipv4),
            ipv6=remote.ipv6,
            created_at=now,
            last_billed_at=now,
            updated_at=now,
        )
        try:
            self.store.insert(inst)
        except Exception:
            log.error("INSTANCE record failed for %s %s — deleting upstream copy",
                      svc.kind, remote.external_id)
            try:
                svc.perform_action(remote.external_id, "delete")
            except ProviderError as e:
                log.error("Upstream cleanup of %s %s failed: %s",
                          svc.kind, remote.external_id, e.message)
            raise

        record_activity(
            EventType.INSTANCE_CREATED, entity_type="instance", entity_id=inst.instance_id,
            organization_id=organization_id, status=ActivityStatus.SUCCESS,
            message=f"Created {svc.kind} instance {inst.label}",
            data={"provider_id": provider_id, "external_id": inst.external_id,
                  "plan_id": plan_id, "region": inst.region},
            db=self.db,
        )
        return {"id": inst.instance_id, "status": inst.status, "external_id": inst.external_id}

    def get_instance(self, provider_id: str, external_id: str) -> dict:
        remote = self._service(provider_id).get_instance(external_id)
        d = remote.to_dict()
        local = self.store.get_by_external(provider_id, external_id)
        d["instance_id"] = local.instance_id if local else None
        return d

    def list_instances(self, provider_id: str) -> list[dict]:
        return [i.to_dict() for i in self._service(provider_id).list_instances()]

    # ── Actions ───────────────────────────────────────────────────────

    def perform_action(self, provider_id: str, external_id: str, action: str,
                       actor: str = "system") -> dict:
        """Fire-and-forget: the ack only means the provider accepted the request."""
        svc = self._service(provider_id)
        svc.perform_action(external_id, action)
        local = self.store.get_by_external(provider_id, external_id)
        record_activity(
            EventType.INSTANCE_ACTION, entity_type="instance",
            entity_id=local.instance_id if local else external_id,
            organization_id=local.organization_id if local else "",
            actor=actor, status=ActivityStatus.SUCCESS,
            message=f"{action} requested on {svc.kind} {external_id}",
            data={"provider_id": provider_id, "external_id": external_id, "action": action},
            db=self.db,
        )
        log.info("ACTION %s %s %s accepted", svc.kind.upper(), external_id, action)
        return {
            "accepted": True,
            "provider_id": provider_id,
            "external_id": str(external_id),
            "action": action,
            "requested_at": time.time(),
        }

    # ── Status sync ───────────────────────────────────────────────────

    def sync_instance(self, instance_id: str) -> ResourceInstance:
        """Pull upstream status and apply it. An upstream 404 confirms deletion."""
        inst = self.store.require(instance_id)
        if inst.status == InstanceStatus.DELETED.value:
            return inst
        svc = self._service(inst.provider_id)
        try:
            remote = svc.get_instance(inst.external_id)
            target = UPSTREAM_TO_LOCAL.get(remote.status)
            ipv4, ipv6 = remote.ipv4, remote.ipv6
        except UpstreamValidation as e:
            if e.status != 404:
                raise
            target, ipv4, ipv6 = InstanceStatus.DELETED, None, None

        if target is None:
            log.debug("INSTANCE %s upstream status unknown — unchanged", instance_id)
            return inst

        previous = inst.status
        inst, changed = self.store.apply_status(instance_id, target, ipv4=ipv4, ipv6=ipv6)
        if changed:
            record_activity(
                EventType.INSTANCE_STATUS_CHANGED, entity_type="instance",
                entity_id=instance_id, organization_id=inst.organization_id,
                message=f"{previous} → {inst.status}",
                data={"from": previous, "to": inst.status}, db=self.db,
            )
        return inst

    def sync_provider(self, provider_id: str) -> dict:
        """Sync every local, non-deleted instance of a provider; failures are counted."""
        result = {"checked": 0, "changed": 0, "errors": []}
        for inst in self.store.list_instances(provider_id=provider_id):
            result["checked"] += 1
            before = inst.status
            try:
                after = self.sync_instance(inst.instance_id)
            except StratusError as e:
                result["errors"].append({"instance_id": inst.instance_id, **e.to_dict()})
                continue
            if after.status != before:
                result["changed"] += 1
        return result

    # ── Lifecycle mutator ─────────────────────────────────────────────

    def request_suspension(self, instance: ResourceInstance, reason: str) -> bool:
        """Power off an instance whose wallet can no longer pay for it.

        Returns True when the provider accepted the shutdown. Failures are
        logged and audited, never raised: billing has already committed.
        """
        ok = True
        err_msg = ""
        try:
            self._service(instance.provider_id).perform_action(instance.external_id, "shutdown")
        except StratusError as e:
            ok = False
            err_msg = e.message
            log.error("SUSPEND %s failed: %s", instance.instance_id, e.message)
        record_activity(
            EventType.INSTANCE_SUSPENSION_REQUESTED, entity_type="instance",
            entity_id=instance.instance_id, organization_id=instance.organization_id,
            actor="billing", status=ActivityStatus.WARNING if ok else ActivityStatus.ERROR,
            message=reason if ok else f"{reason} (shutdown failed: {err_msg})",
            data={"provider_id": instance.provider_id, "external_id": instance.external_id,
                  "shutdown_accepted": ok},
            db=self.db,
        )
        if ok:
            log.warning("SUSPEND %s (%s)", instance.instance_id, reason)
        return ok
