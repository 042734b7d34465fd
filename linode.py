# Stratus Linode adapter (API v4)
# Wire format reference: https://techdocs.akamai.com/linode-api/reference/api
#
# Linode has no power-cycle primitive; power_cycle is issued as a reboot.
# Marketplace apps are StackScripts: app_image carries the StackScript id and
# is deployed on LINODE_APP_BASE_IMAGE.

import logging
import os
from decimal import Decimal

from catalog import ProviderKind
from errors import UpstreamValidation
from providers import (
    BaseProvider,
    CreateInstanceSpec,
    ProviderImage,
    ProviderInstance,
    ProviderPlan,
    ProviderRegion,
)

log = logging.getLogger("stratus.providers")

LINODE_API_URL = os.environ.get("STRATUS_LINODE_API_URL", "https://api.linode.com/v4")
LINODE_APP_BASE_IMAGE = os.environ.get("STRATUS_LINODE_APP_BASE_IMAGE", "linode/ubuntu22.04")
PAGE_SIZE = 500

STATUS_MAP = {
    "running": "running",
    "offline": "stopped",
    "stopped": "stopped",
    "shutting_down": "stopped",
    "booting": "provisioning",
    "provisioning": "provisioning",
    "migrating": "provisioning",
    "rebuilding": "provisioning",
    "cloning": "provisioning",
    "restoring": "provisioning",
    "resizing": "provisioning",
    "rebooting": "rebooting",
    "deleting": "unknown",  # confirmed by a 404 once gone
}

ACTION_PATHS = {
    "boot": "boot",
    "shutdown": "shutdown",
    "reboot": "reboot",
    "power_cycle": "reboot",
}


def normalize_status(status) -> str:
    return STATUS_MAP.get(str(status or "").lower(), "unknown")


class LinodeProvider(BaseProvider):
    kind = ProviderKind.LINODE
    base_url = LINODE_API_URL

    def _paginate(self, path: str) -> list:
        items, page, pages = [], 1, 1
        while page <= pages:
            body = self._request("GET", path, params={"page": page, "page_size": PAGE_SIZE})
            items.extend(body.get("data", []))
            pages = int(body.get("pages", 1) or 1)
            page += 1
        return items

    @staticmethod
    def _to_instance(raw: dict) -> ProviderInstance:
        specs = raw.get("specs") or {}
        return ProviderInstance(
            external_id=str(raw.get("id", "")),
            label=raw.get("label", ""),
            status=normalize_status(raw.get("status")),
            region=raw.get("region", ""),
            plan=raw.get("type", "") or "",
            image=raw.get("image", "") or "",
            ipv4=list(raw.get("ipv4") or []),
            ipv6=raw.get("ipv6", "") or "",
            vcpus=int(specs.get("vcpus", 0) or 0),
            memory_mb=int(specs.get("memory", 0) or 0),
            disk_gb=int(specs.get("disk", 0) or 0) // 1024,
            created=raw.get("created", "") or "",
            tags=list(raw.get("tags") or []),
        )

    # ── Instances ─────────────────────────────────────────────────────

    def create_instance(self, spec: CreateInstanceSpec) -> ProviderInstance:
        which, image_id = spec.upstream_image()
        body = {
            "type": spec.plan,
            "region": spec.region,
            "label": spec.label,
            "backups_enabled": bool(spec.backups),
            "private_ip": bool(spec.private_networking),
            "tags": list(spec.tags),
            "booted": True,
        }
        if which == "app":
            try:
                body["stackscript_id"] = int(image_id)
            except ValueError:
                raise UpstreamValidation(f"Linode marketplace app id must be numeric: {image_id}",
                                         provider=self.kind.value, field="app_image")
            body["stackscript_data"] = dict(spec.app_data)
            body["image"] = LINODE_APP_BASE_IMAGE
        else:
            body["image"] = image_id
        if spec.root_password:
            body["root_pass"] = spec.root_password
        keys = list(spec.authorized_keys) + self._resolve_key_ids(spec.ssh_key_ids)
        if keys:
            body["authorized_keys"] = list(dict.fromkeys(keys))
        raw = self._request("POST", "/linode/instances", json=body)
        log.info("LINODE created instance %s (%s in %s)", raw.get("id"), spec.plan, spec.region)
        return self._to_instance(raw)

    def _resolve_key_ids(self, key_ids) -> list:
        """Linode create only takes raw public keys; look stored profile keys up by id."""
        keys = []
        for key_id in key_ids:
            try:
                raw = self._request("GET", f"/profile/sshkeys/{key_id}")
            except UpstreamValidation as e:
                raise UpstreamValidation(f"Unknown Linode SSH key id {key_id}: {e.message}",
                                         provider=self.kind.value, field="ssh_key_ids",
                                         status=e.status) from e
            public_key = (raw.get("ssh_key") or "").strip()
            if not public_key:
                raise UpstreamValidation(f"Linode SSH key {key_id} has no key material",
                                         provider=self.kind.value, field="ssh_key_ids")
            keys.append(public_key)
        return keys

    def get_instance(self, external_id: str) -> ProviderInstance:
        return self._to_instance(self._request("GET", f"/linode/instances/{external_id}"))

    def list_instances(self) -> list[ProviderInstance]:
        return [self._to_instance(r) for r in self._paginate("/linode/instances")]

    def perform_action(self, external_id: str, action: str) -> None:
        self._check_action(action)
        if action == "delete":
            self._request("DELETE", f"/linode/instances/{external_id}")
            return
        self._request("POST", f"/linode/instances/{external_id}/{ACTION_PATHS[action]}")

    # ── Catalog ───────────────────────────────────────────────────────

    def get_plans(self) -> list[ProviderPlan]:
        plans = []
        for t in self._paginate("/linode/types"):
            price = t.get("price") or {}
            plans.append(ProviderPlan(
                id=t.get("id", ""),
                label=t.get("label", ""),
                vcpus=int(t.get("vcpus", 0) or 0),
                memory_mb=int(t.get("memory", 0) or 0),
                disk_gb=int(t.get("disk", 0) or 0) // 1024,
                transfer_gb=int(t.get("transfer", 0) or 0),
                price_hourly=Decimal(str(price.get("hourly", 0) or 0)),
                price_monthly=Decimal(str(price.get("monthly", 0) or 0)),
            ))
        return plans

    def get_images(self) -> list[ProviderImage]:
        return [
            ProviderImage(
                id=i.get("id", ""),
                label=i.get("label", ""),
                distribution=i.get("vendor", "") or "",
                description=i.get("description", "") or "",
                public=bool(i.get("is_public", True)),
                min_disk_gb=int(i.get("size", 0) or 0) // 1024,
            )
            for i in self._paginate("/images")
            if not i.get("deprecated")
        ]

    def get_regions(self) -> list[ProviderRegion]:
        return [
            ProviderRegion(
                id=r.get("id", ""),
                label=r.get("label", ""),
                country=(r.get("country") or "").upper(),
                available=r.get("status") == "ok",
            )
            for r in self._paginate("/regions")
        ]

    # ── SSH keys ──────────────────────────────────────────────────────

    def create_ssh_key(self, label: str, public_key: str) -> str:
        raw = self._request("POST", "/profile/sshkeys",
                            json={"label": label, "ssh_key": public_key.strip()})
        return str(raw.get("id", ""))

    def delete_ssh_key(self, key_id: str) -> None:
        self._request("DELETE", f"/profile/sshkeys/{key_id}")

    def _whoami(self):
        return self._request("GET", "/profile")
