"""Test doubles shared by the provider, VPS, SSH key and API tests.

FakeSession stands in for requests.Session at the HTTP boundary;
FakeClient stands in for a whole adapter above it.
"""

import json as jsonlib

from catalog import ProviderKind
from errors import UpstreamValidation
from providers import BaseProvider, ProviderImage, ProviderInstance, ProviderPlan, ProviderRegion


class FakeResponse:
    def __init__(self, status_code=200, body=None, headers=None):
        self.status_code = status_code
        self._body = body
        self.headers = headers or {}
        if body is None:
            self.content = b""
            self.text = ""
        else:
            self.text = jsonlib.dumps(body)
            self.content = self.text.encode()

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body


class FakeSession:
    """Replays queued responses (or raises queued exceptions) and records calls."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def queue(self, *responses):
        self.responses.extend(responses)

    def request(self, method, url, headers=None, params=None, json=None, timeout=None):
        self.calls.append({"method": method, "url": url, "headers": headers,
                           "params": params, "json": json, "timeout": timeout})
        if not self.responses:
            raise AssertionError(f"unexpected request {method} {url}")
        nxt = self.responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt


class FakeClient(BaseProvider):
    """In-memory adapter with the full capability set."""

    kind = ProviderKind.LINODE

    def __init__(self, api_token="fake-token", kind=ProviderKind.LINODE, **kw):
        self.kind = ProviderKind(kind)
        super().__init__(api_token, session=object(), **kw)
        self.instances = {}
        self.actions = []
        self.created_specs = []
        self.ssh_keys = {}
        self.fail_ssh_with = None
        self.fail_action_with = None
        self._next_id = 1000

    def _new_id(self):
        self._next_id += 1
        return str(self._next_id)

    def create_instance(self, spec):
        self.created_specs.append(spec)
        ext = self._new_id()
        inst = ProviderInstance(external_id=ext, label=spec.label, status="running",
                                region=spec.region, plan=spec.plan,
                                image=spec.image or "", ipv4=["192.0.2.10"])
        self.instances[ext] = inst
        return ProviderInstance(**inst.to_dict())

    def get_instance(self, external_id):
        inst = self.instances.get(str(external_id))
        if inst is None:
            raise UpstreamValidation("Not found", provider=self.kind.value, status=404)
        return inst

    def list_instances(self):
        return list(self.instances.values())

    def perform_action(self, external_id, action):
        self._check_action(action)
        if self.fail_action_with is not None:
            raise self.fail_action_with
        self.actions.append((str(external_id), action))

    def get_plans(self):
        return [ProviderPlan(id="g6-nanode-1", label="Nanode 1GB", vcpus=1, memory_mb=1024)]

    def get_images(self):
        return [ProviderImage(id="linode/debian12", label="Debian 12")]

    def get_regions(self):
        return [ProviderRegion(id="us-east", label="Newark"),
                ProviderRegion(id="eu-west", label="London")]

    def create_ssh_key(self, label, public_key):
        if self.fail_ssh_with is not None:
            raise self.fail_ssh_with
        key_id = self._new_id()
        self.ssh_keys[key_id] = public_key
        return key_id

    def delete_ssh_key(self, key_id):
        if self.fail_ssh_with is not None:
            raise self.fail_ssh_with
        if self.ssh_keys.pop(str(key_id), None) is None:
            raise UpstreamValidation("Not found", provider=self.kind.value, status=404)

    def _whoami(self):
        return {"username": "fake"}


class FakeClientFactory:
    """client_factory(provider, token) that hands out one FakeClient per provider."""

    def __init__(self):
        self.clients = {}

    def __call__(self, provider, token):
        client = self.clients.get(provider.provider_id)
        if client is None:
            client = FakeClient(token, kind=provider.kind, provider_id=provider.provider_id)
            self.clients[provider.provider_id] = client
        return client
