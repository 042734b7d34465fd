# Stratus DigitalOcean adapter (API v2)
# Wire format reference: https://docs.digitalocean.com/reference/api/
#
# Droplets have no root_pass field: the password and any raw public keys are
# delivered through cloud-config user_data. Pre-registered account keys go in
# ssh_keys by id. A 1-Click app slug is sent in the same "image" field as a
# distribution slug.

import json
import logging
import os
from decimal import Decimal
from typing import Optional

from catalog import ProviderKind
from providers import (
    BaseProvider,
    CreateInstanceSpec,
    ProviderImage,
    ProviderInstance,
    ProviderPlan,
    ProviderRegion,
)

log = logging.getLogger("stratus.providers")

DIGITALOCEAN_API_URL = os.environ.get("STRATUS_DIGITALOCEAN_API_URL",
                                      "https://api.digitalocean.com/v2")
PER_PAGE = 200

STATUS_MAP = {
    "new": "provisioning",
    "active": "running",
    "off": "stopped",
    "archive": "stopped",
}

ACTION_TYPES = {
    "boot": "power_on",
    "shutdown": "shutdown",
    "reboot": "reboot",
    "power_cycle": "power_cycle",
}


def normalize_status(status) -> str:
    return STATUS_MAP.get(str(status or "").lower(), "unknown")


def build_user_data(spec: CreateInstanceSpec) -> Optional[str]:
    """Cloud-config for password login and raw authorized keys.

    Values are JSON-quoted, which is valid YAML for scalars.
    """
    lines = []
    if spec.root_password:
        lines += [
            f"password: {json.dumps(spec.root_password)}",
            "chpasswd: { expire: False }",
            "ssh_pwauth: True",
        ]
    if spec.authorized_keys:
        lines.append("ssh_authorized_keys:")
        lines += [f"  - {json.dumps(k.strip())}" for k in spec.authorized_keys]
    if not lines:
        return None
    return "#cloud-config\n" + "\n".join(lines) + "\n"


class DigitalOceanProvider(BaseProvider):
    kind = ProviderKind.DIGITALOCEAN
    base_url = DIGITALOCEAN_API_URL

    def _paginate(self, path: str, key: str, params: Optional[dict] = None) -> list:
        items, page = [], 1
        while True:
            query = dict(params or {}, page=page, per_page=PER_PAGE)
            body = self._request("GET", path, params=query)
            items.extend(body.get(key, []))
            pages = (body.get("links") or {}).get("pages") or {}
            if not pages.get("next"):
                return items
            page += 1

    @staticmethod
    def _to_instance(raw: dict) -> ProviderInstance:
        networks = raw.get("networks") or {}
        ipv4 = [n.get("ip_address") for n in networks.get("v4", [])
                if n.get("type") == "public" and n.get("ip_address")]
        ipv6 = next((n.get("ip_address") for n in networks.get("v6", [])
                     if n.get("type") == "public"), "") or ""
        image = raw.get("image") or {}
        region = raw.get("region") or {}
        return ProviderInstance(
            external_id=str(raw.get("id", "")),
            label=raw.get("name", ""),
            status=normalize_status(raw.get("status")),
            region=region.get("slug", "") if isinstance(region, dict) else str(region),
            plan=raw.get("size_slug", "") or "",
            image=image.get("slug") or str(image.get("id", "")),
            ipv4=ipv4,
            ipv6=ipv6,
            vcpus=int(raw.get("vcpus", 0) or 0),
            memory_mb=int(raw.get("memory", 0) or 0),
            disk_gb=int(raw.get("disk", 0) or 0),
            created=raw.get("created_at", "") or "",
            tags=list(raw.get("tags") or []),
        )

    # ── Instances ─────────────────────────────────────────────────────

    def create_instance(self, spec: CreateInstanceSpec) -> ProviderInstance:
        _which, image_id = spec.upstream_image()
        body = {
            "name": spec.label,
            "region": spec.region,
            "size": spec.plan,
            "image": image_id,
            "backups": bool(spec.backups),
            "ipv6": bool(spec.ipv6),
            "monitoring": bool(spec.monitoring),
            "tags": list(spec.tags),
        }
        key_ids = []
        for k in spec.ssh_key_ids:
            try:
                key_ids.append(int(k))
            except (TypeError, ValueError):
                key_ids.append(str(k))  # fingerprints are accepted too
        if key_ids:
            body["ssh_keys"] = key_ids
        user_data = build_user_data(spec)
        if user_data:
            body["user_data"] = user_data
        raw = self._request("POST", "/droplets", json=body).get("droplet", {})
        log.info("DIGITALOCEAN created droplet %s (%s in %s)", raw.get("id"), spec.plan, spec.region)
        return self._to_instance(raw)

    def get_instance(self, external_id: str) -> ProviderInstance:
        return self._to_instance(self._request("GET", f"/droplets/{external_id}").get("droplet", {}))

    def list_instances(self) -> list[ProviderInstance]:
        return [self._to_instance(d) for d in self._paginate("/droplets", "droplets")]

    def perform_action(self, external_id: str, action: str) -> None:
        self._check_action(action)
        if action == "delete":
            self._request("DELETE", f"/droplets/{external_id}")
            return
        self._request("POST", f"/droplets/{external_id}/actions",
                      json={"type": ACTION_TYPES[action]})

    # ── Catalog ───────────────────────────────────────────────────────

    def get_plans(self) -> list[ProviderPlan]:
        return [
            ProviderPlan(
                id=s.get("slug", ""),
                label=s.get("description") or s.get("slug", ""),
                vcpus=int(s.get("vcpus", 0) or 0),
                memory_mb=int(s.get("memory", 0) or 0),
                disk_gb=int(s.get("disk", 0) or 0),
                transfer_gb=int(float(s.get("transfer", 0) or 0) * 1024),
                price_hourly=Decimal(str(s.get("price_hourly", 0) or 0)),
                price_monthly=Decimal(str(s.get("price_monthly", 0) or 0)),
                regions=list(s.get("regions") or []),
            )
            for s in self._paginate("/sizes", "sizes")
            if s.get("available", True)
        ]

    def get_images(self) -> list[ProviderImage]:
        return [
            ProviderImage(
                id=i.get("slug") or str(i.get("id", "")),
                label=i.get("name", ""),
                distribution=i.get("distribution", "") or "",
                description=i.get("description", "") or "",
                public=bool(i.get("public", True)),
                min_disk_gb=int(i.get("min_disk_size", 0) or 0),
            )
            for i in self._paginate("/images", "images", {"type": "distribution"})
        ]

    def get_regions(self) -> list[ProviderRegion]:
        return [
            ProviderRegion(
                id=r.get("slug", ""),
                label=r.get("name", ""),
                available=bool(r.get("available", False)),
            )
            for r in self._paginate("/regions", "regions")
        ]

    # ── SSH keys ──────────────────────────────────────────────────────

    def create_ssh_key(self, label: str, public_key: str) -> str:
        raw = self._request("POST", "/account/keys",
                            json={"name": label, "public_key": public_key.strip()})
        return str((raw.get("ssh_key") or {}).get("id", ""))

    def delete_ssh_key(self, key_id: str) -> None:
        self._request("DELETE", f"/account/keys/{key_id}")

    def _whoami(self):
        return self._request("GET", "/account")
