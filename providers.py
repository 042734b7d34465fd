# Stratus Provider Abstraction Layer
#
# One capability set over every upstream cloud:
#   create_instance / get_instance / list_instances / perform_action
#   get_plans / get_images / get_regions / validate_credentials
#   create_ssh_key / delete_ssh_key
#
# Adapters (linode.py, digitalocean.py) translate the normalized types below
# to and from their provider's wire format. Everything that can go wrong on the
# wire is converted to the errors.py taxonomy inside BaseProvider._request, so
# no requests exception or provider-shaped body reaches business logic.

import logging
import os
import threading
import time
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from email.utils import parsedate_to_datetime
from typing import Callable, Optional

import requests

from catalog import CatalogStore, Provider, ProviderKind, parse_kind
from errors import (
    MissingCredentials,
    ProviderError,
    ProviderNotFound,
    ProviderUnavailable,
    UnsupportedAction,
    UpstreamValidation,
    normalize_http_error,
)

log = logging.getLogger("stratus.providers")

# ── Configuration ─────────────────────────────────────────────────────

PROVIDER_TIMEOUT_SEC = float(os.environ.get("STRATUS_PROVIDER_TIMEOUT_SEC", "15"))
PROVIDER_MAX_RETRIES = int(os.environ.get("STRATUS_PROVIDER_MAX_RETRIES", "3"))
PROVIDER_RETRY_BASE_SEC = float(os.environ.get("STRATUS_PROVIDER_RETRY_BASE_SEC", "1"))
MAX_RETRY_DELAY_SEC = 60.0

ACTIONS = frozenset({"boot", "shutdown", "reboot", "power_cycle", "delete"})


# ── Normalized types ──────────────────────────────────────────────────


@dataclass
class ProviderInstance:
    external_id: str
    label: str = ""
    status: str = "unknown"     # provisioning|running|stopped|rebooting|error|deleted|unknown
    region: str = ""
    plan: str = ""
    image: str = ""
    ipv4: list = field(default_factory=list)
    ipv6: str = ""
    vcpus: int = 0
    memory_mb: int = 0
    disk_gb: int = 0
    created: str = ""
    tags: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProviderPlan:
    id: str
    label: str = ""
    vcpus: int = 0
    memory_mb: int = 0
    disk_gb: int = 0
    transfer_gb: int = 0
    price_hourly: Decimal = Decimal("0")
    price_monthly: Decimal = Decimal("0")
    regions: list = field(default_factory=list)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["price_hourly"] = str(self.price_hourly)
        d["price_monthly"] = str(self.price_monthly)
        return d


@dataclass
class ProviderImage:
    id: str
    label: str = ""
    distribution: str = ""
    description: str = ""
    public: bool = True
    min_disk_gb: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProviderRegion:
    id: str
    label: str = ""
    country: str = ""
    available: bool = True

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CreateInstanceSpec:
    """Provider-neutral create request.

    ``plan`` is the upstream size/type id. At most one of ``image`` and
    ``app_image`` is sent upstream; a marketplace app wins over a base image.
    """
    label: str
    plan: str
    region: str
    image: Optional[str] = None
    app_image: Optional[str] = None
    root_password: Optional[str] = None
    authorized_keys: list = field(default_factory=list)
    ssh_key_ids: list = field(default_factory=list)
    backups: bool = False
    monitoring: bool = False
    private_networking: bool = False
    ipv6: bool = False
    tags: list = field(default_factory=list)
    app_data: dict = field(default_factory=dict)

    def upstream_image(self) -> tuple[str, str]:
        """Return ("app" | "image", id) for the single image sent upstream."""
        if self.app_image:
            if self.image:
                log.info("create %s: app image %s overrides base image %s",
                         self.label, self.app_image, self.image)
            return ("app", self.app_image)
        if self.image:
            return ("image", self.image)
        raise UpstreamValidation("An image or marketplace app is required", field="image")

    def validate(self):
        if not self.label:
            raise UpstreamValidation("Instance label is required", field="label")
        if not self.plan:
            raise UpstreamValidation("Plan is required", field="plan")
        if not self.region:
            raise UpstreamValidation("Region is required", field="region")
        self.upstream_image()


# ── Retry helpers ─────────────────────────────────────────────────────


def _parse_retry_after(value) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        pass
    try:
        return max(0.0, parsedate_to_datetime(value).timestamp() - time.time())
    except (TypeError, ValueError):
        return None


def _safe_json(resp):
    try:
        return resp.json()
    except ValueError:
        return resp.text[:500] if resp.text else None


# ── Base adapter ──────────────────────────────────────────────────────


class BaseProvider:
    """HTTP plumbing shared by all adapters: auth, timeout, retry, normalization."""

    kind: ProviderKind
    base_url: str = ""

    def __init__(self, api_token: str, *, provider_id: str = "",
                 session: Optional[requests.Session] = None,
                 timeout: Optional[float] = None,
                 max_retries: Optional[int] = None,
                 retry_base: Optional[float] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.api_token = api_token or ""
        self.provider_id = provider_id or f"{self.kind.value}-default"
        self.session = session or requests.Session()
        self.timeout = PROVIDER_TIMEOUT_SEC if timeout is None else timeout
        self.max_retries = PROVIDER_MAX_RETRIES if max_retries is None else max_retries
        self.retry_base = PROVIDER_RETRY_BASE_SEC if retry_base is None else retry_base
        self._sleep = sleep

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _require_token(self):
        if not self.api_token:
            raise MissingCredentials(f"{self.kind.value} API token not configured",
                                     provider=self.kind.value)

    def _request(self, method: str, path: str, *, params: Optional[dict] = None,
                 json: Optional[dict] = None):
        """Perform one logical call with bounded retries.

        429, 5xx and network failures are retried with exponential backoff
        (Retry-After wins for 429). Other 4xx fail immediately.
        """
        self._require_token()
        url = f"{self.base_url}{path}"
        kind = self.kind.value
        attempt = 0
        while True:
            retry_after = None
            try:
                resp = self.session.request(
                    method, url, headers=self._headers(), params=params,
                    json=json, timeout=self.timeout,
                )
            except requests.Timeout:
                err = ProviderUnavailable(f"{kind} request timed out after {self.timeout}s",
                                          provider=kind)
            except requests.RequestException as e:
                err = ProviderUnavailable(f"{kind} network error: {e}", provider=kind)
            else:
                if resp.status_code < 400:
                    if resp.status_code == 204 or not resp.content:
                        return {}
                    try:
                        return resp.json()
                    except ValueError:
                        raise ProviderError(f"{kind} returned a non-JSON response",
                                            provider=kind, status=resp.status_code)
                retry_after = _parse_retry_after(resp.headers.get("Retry-After"))
                err = normalize_http_error(kind, resp.status_code, _safe_json(resp),
                                           retry_after=retry_after)
                if resp.status_code != 429 and resp.status_code < 500:
                    raise err

            if attempt >= self.max_retries:
                log.error("%s %s %s failed after %d attempts: %s",
                          kind.upper(), method, path, attempt + 1, err.message)
                raise err

            delay = retry_after if retry_after is not None else self.retry_base * (2 ** attempt)
            delay = min(delay, MAX_RETRY_DELAY_SEC)
            log.warning("%s %s %s retry %d/%d in %.1fs (%s)",
                        kind.upper(), method, path, attempt + 1, self.max_retries,
                        delay, err.code)
            self._sleep(delay)
            attempt += 1

    def _check_action(self, action: str):
        if action not in ACTIONS:
            raise UnsupportedAction(f"Unsupported action: {action}",
                                    provider=self.kind.value, field="action")

    # Capability set

    def create_instance(self, spec: CreateInstanceSpec) -> ProviderInstance:
        raise NotImplementedError

    def get_instance(self, external_id: str) -> ProviderInstance:
        raise NotImplementedError

    def list_instances(self) -> list[ProviderInstance]:
        raise NotImplementedError

    def perform_action(self, external_id: str, action: str) -> None:
        raise NotImplementedError

    def get_plans(self) -> list[ProviderPlan]:
        raise NotImplementedError

    def get_images(self) -> list[ProviderImage]:
        raise NotImplementedError

    def get_regions(self) -> list[ProviderRegion]:
        raise NotImplementedError

    def create_ssh_key(self, label: str, public_key: str) -> str:
        raise NotImplementedError

    def delete_ssh_key(self, key_id: str) -> None:
        raise NotImplementedError

    def validate_credentials(self) -> bool:
        """True when the token is accepted. Transient failures still raise."""
        try:
            self._whoami()
            return True
        except MissingCredentials:
            return False

    def _whoami(self):
        raise NotImplementedError


# ── Resource cache ────────────────────────────────────────────────────

CACHE_TTLS = {
    "plans": 3600,
    "images": 3600,
    "regions": 24 * 3600,
}


class ProviderResourceCache:
    """Per-provider TTL cache for slow-changing catalog listings."""

    def __init__(self, ttls: Optional[dict] = None, clock: Callable[[], float] = time.time):
        self.ttls = dict(CACHE_TTLS, **(ttls or {}))
        self._clock = clock
        self._entries: dict = {}
        self._lock = threading.Lock()

    def get(self, provider_id: str, resource: str):
        with self._lock:
            entry = self._entries.get((provider_id, resource))
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[(provider_id, resource)]
                return None
            return value

    def set(self, provider_id: str, resource: str, value):
        ttl = self.ttls.get(resource, 3600)
        with self._lock:
            self._entries[(provider_id, resource)] = (self._clock() + ttl, value)

    def get_or_load(self, provider_id: str, resource: str, loader: Callable):
        cached = self.get(provider_id, resource)
        if cached is not None:
            return cached
        value = loader()
        self.set(provider_id, resource, value)
        return value

    def invalidate(self, provider_id: Optional[str] = None):
        with self._lock:
            if provider_id is None:
                self._entries.clear()
            else:
                for key in [k for k in self._entries if k[0] == provider_id]:
                    del self._entries[key]

    def stats(self) -> dict:
        with self._lock:
            return {"entries": len(self._entries)}


resource_cache = ProviderResourceCache()


# ── Factory ───────────────────────────────────────────────────────────


def provider_classes() -> dict:
    from digitalocean import DigitalOceanProvider
    from linode import LinodeProvider

    return {
        ProviderKind.LINODE: LinodeProvider,
        ProviderKind.DIGITALOCEAN: DigitalOceanProvider,
    }


def supported_provider_kinds() -> list[str]:
    return [k.value for k in provider_classes()]


def create_provider_client(kind, api_token: str, **kwargs) -> BaseProvider:
    cls = provider_classes().get(parse_kind(kind))
    if cls is None:
        raise ProviderError(f"Provider kind {kind} is not implemented")
    return cls(api_token, **kwargs)


class ProviderService:
    """A configured provider: catalog record + adapter + cached listings.

    This is what get_provider_service() hands to callers. Listing calls go
    through the shared resource cache; regions honour the provider's
    allow-list.
    """

    def __init__(self, provider: Provider, client: BaseProvider,
                 cache: Optional[ProviderResourceCache] = None):
        self.provider = provider
        self.client = client
        self.cache = cache or resource_cache

    @property
    def kind(self) -> str:
        return self.provider.kind

    @property
    def provider_id(self) -> str:
        return self.provider.provider_id

    def create_instance(self, spec: CreateInstanceSpec) -> ProviderInstance:
        spec.validate()
        if not self.provider.allows_region(spec.region):
            raise UpstreamValidation(f"Region {spec.region} is not enabled for this provider",
                                     provider=self.kind, field="region")
        inst = self.client.create_instance(spec)
        inst.status = "provisioning"
        return inst

    def get_instance(self, external_id: str) -> ProviderInstance:
        return self.client.get_instance(str(external_id))

    def list_instances(self) -> list[ProviderInstance]:
        return self.client.list_instances()

    def perform_action(self, external_id: str, action: str) -> None:
        if action not in ACTIONS:
            raise UnsupportedAction(f"Unsupported action: {action}",
                                    provider=self.kind, field="action")
        self.client.perform_action(str(external_id), action)

    def get_plans(self) -> list[ProviderPlan]:
        return self.cache.get_or_load(self.provider_id, "plans", self.client.get_plans)

    def get_images(self) -> list[ProviderImage]:
        return self.cache.get_or_load(self.provider_id, "images", self.client.get_images)

    def get_regions(self) -> list[ProviderRegion]:
        regions = self.cache.get_or_load(self.provider_id, "regions", self.client.get_regions)
        return [r for r in regions if self.provider.allows_region(r.id)]

    def validate_credentials(self) -> bool:
        return self.client.validate_credentials()

    def create_ssh_key(self, label: str, public_key: str) -> str:
        return self.client.create_ssh_key(label, public_key)

    def delete_ssh_key(self, key_id: str) -> None:
        self.client.delete_ssh_key(str(key_id))


ClientFactory = Callable[[Provider, str], BaseProvider]


def _default_client_factory(provider: Provider, api_token: str) -> BaseProvider:
    return create_provider_client(provider.kind, api_token, provider_id=provider.provider_id)


def _build_service(provider: Provider, client_factory: Optional[ClientFactory]) -> ProviderService:
    token = provider.api_token
    if not token:
        raise MissingCredentials(f"Provider API key not configured for {provider.name}",
                                 provider=provider.kind)
    factory = client_factory or _default_client_factory
    return ProviderService(provider, factory(provider, token))


def get_provider_service(provider_id: str, catalog: Optional[CatalogStore] = None,
                         client_factory: Optional[ClientFactory] = None) -> ProviderService:
    """Resolve a configured provider into a usable service.

    Raises ProviderNotFound, ProviderInactive or MissingCredentials.
    """
    catalog = catalog or CatalogStore()
    provider = catalog.require_active_provider(provider_id)
    return _build_service(provider, client_factory)


def get_provider_service_by_kind(kind, catalog: Optional[CatalogStore] = None,
                                 client_factory: Optional[ClientFactory] = None) -> ProviderService:
    """First active provider of a kind. Raises ProviderNotFound if none is configured."""
    catalog = catalog or CatalogStore()
    kind = parse_kind(kind)
    provider = catalog.first_active_provider(kind)
    if provider is None:
        raise ProviderNotFound(f"No active {kind.value} provider configured",
                               provider=kind.value)
    return _build_service(provider, client_factory)
