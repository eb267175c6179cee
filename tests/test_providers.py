import json

import pytest
import requests

import providers
from exc import ProviderError, TemplateFetchError


class FakeResponse:
    def __init__(self, content, status_code=200):
        self.content = content
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


@pytest.fixture()
def provider():
    return providers.HTTPTemplateProvider(
        {"TEMPLATE_URL": "http://templates.example/sidecars", "TEMPLATE_TIMEOUT": 2}
    )


def test_fetch_templates(monkeypatch, provider, template_data):
    seen = {}

    def fake_get(url, timeout=None):
        seen["url"] = url
        seen["timeout"] = timeout
        return FakeResponse(json.dumps(template_data).encode())

    monkeypatch.setattr(providers.requests, "get", fake_get)
    templates = provider.templates()

    assert seen == {"url": "http://templates.example/sidecars", "timeout": 2}
    assert [t.selector.injector for t in templates.items] == ["logging", "proxy"]
    assert [c.name for c in templates.items[0].spec.containers] == [
        "fluentd",
        "logrotate",
    ]


def test_fetch_connection_error(monkeypatch, provider):
    def fake_get(url, timeout=None):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(providers.requests, "get", fake_get)
    with pytest.raises(TemplateFetchError):
        provider.templates()


def test_fetch_timeout(monkeypatch, provider):
    def fake_get(url, timeout=None):
        raise requests.Timeout("timed out")

    monkeypatch.setattr(providers.requests, "get", fake_get)
    with pytest.raises(TemplateFetchError):
        provider.templates()


def test_fetch_http_error(monkeypatch, provider):
    monkeypatch.setattr(
        providers.requests, "get", lambda url, timeout=None: FakeResponse(b"", 503)
    )
    with pytest.raises(TemplateFetchError):
        provider.templates()


@pytest.mark.parametrize(
    "content",
    [
        b"Ceci n'est pas JSON",
        b'{"items": [{"spec": {"containers": []}}]}',
        b'{"items": "nope"}',
    ],
)
def test_fetch_malformed(monkeypatch, provider, content):
    monkeypatch.setattr(
        providers.requests, "get", lambda url, timeout=None: FakeResponse(content)
    )
    with pytest.raises(TemplateFetchError):
        provider.templates()


@pytest.mark.parametrize("timeout", [0, -1, "soon", None, True])
def test_invalid_timeout(timeout):
    with pytest.raises(ProviderError):
        providers.HTTPTemplateProvider({"TEMPLATE_TIMEOUT": timeout})


class FakeResourceList:
    def __init__(self, data):
        self.data = data

    def to_dict(self):
        return self.data


class FakeSidecarResource:
    def __init__(self, data=None, error=None):
        self.data = data
        self.error = error
        self.namespace = None

    def get(self, namespace=None):
        self.namespace = namespace
        if self.error:
            raise self.error
        return FakeResourceList(self.data)


class FakeResources:
    def __init__(self, resource):
        self.resource = resource

    def get(self, api_version=None, kind=None):
        assert api_version == "pods.injector.com/v1"
        assert kind == "Sidecar"
        return self.resource


def make_kubernetes_provider(monkeypatch, resource):
    class FakeDynamicClient:
        def __init__(self, api_client):
            self.resources = FakeResources(resource)

    monkeypatch.setattr(providers.config, "load_config", lambda: None)
    monkeypatch.setattr(providers.client, "ApiClient", lambda: None)
    monkeypatch.setattr(providers, "DynamicClient", FakeDynamicClient)
    return providers.KubernetesTemplateProvider({"TEMPLATE_NAMESPACE": "sidecars"})


def test_kubernetes_templates(monkeypatch, template_data):
    data = {
        "apiVersion": "pods.injector.com/v1",
        "kind": "SidecarList",
        "items": [
            dict(
                item,
                apiVersion="pods.injector.com/v1",
                kind="Sidecar",
                metadata={"name": "sidecar-%d" % i},
            )
            for i, item in enumerate(template_data["items"])
        ],
    }
    resource = FakeSidecarResource(data=data)
    provider = make_kubernetes_provider(monkeypatch, resource)

    templates = provider.templates()

    assert resource.namespace == "sidecars"
    assert [t.selector.injector for t in templates.items] == ["logging", "proxy"]


def test_kubernetes_templates_failure(monkeypatch):
    resource = FakeSidecarResource(error=RuntimeError("forbidden"))
    provider = make_kubernetes_provider(monkeypatch, resource)

    with pytest.raises(TemplateFetchError):
        provider.templates()


def test_kubernetes_not_configured(monkeypatch):
    def fail():
        raise providers.config.ConfigException("no config")

    monkeypatch.setattr(providers.config, "load_config", fail)
    with pytest.raises(ProviderError):
        providers.KubernetesTemplateProvider({})
