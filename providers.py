import logging

import pydantic
import requests

from kubernetes import config, client
from openshift.dynamic import DynamicClient
from typing import Any, Mapping
from typing_extensions import Protocol, override

from exc import ProviderError, TemplateFetchError
from models import SidecarTemplateList

LOG = logging.getLogger(__name__)

SIDECAR_API_VERSION = "pods.injector.com/v1"
SIDECAR_KIND = "Sidecar"
DEFAULT_TEMPLATE_URL = (
    f"http://127.0.0.1:8001/apis/{SIDECAR_API_VERSION}/namespaces/default/sidecars"
)
DEFAULT_TEMPLATE_TIMEOUT = 5
DEFAULT_TEMPLATE_NAMESPACE = "default"


class TemplateProvider(Protocol):
    def templates(self) -> SidecarTemplateList: ...


class HTTPTemplateProvider(TemplateProvider):
    """Read sidecar templates from a JSON endpoint.

    The default endpoint is the list of Sidecar resources as served by
    `kubectl proxy` running next to the webhook.
    """

    def __init__(self, settings: Mapping[str, Any]):
        super().__init__()

        self.url = settings.get("TEMPLATE_URL", DEFAULT_TEMPLATE_URL)
        self.timeout = settings.get("TEMPLATE_TIMEOUT", DEFAULT_TEMPLATE_TIMEOUT)

        if (
            isinstance(self.timeout, bool)
            or not isinstance(self.timeout, (int, float))
            or self.timeout <= 0
        ):
            LOG.error("invalid template timeout: %s", self.timeout)
            raise ProviderError("template timeout must be a positive number")

    @override
    def templates(self):
        try:
            res = requests.get(self.url, timeout=self.timeout)
            res.raise_for_status()
        except requests.RequestException as err:
            LOG.warning("failed to fetch sidecar templates from %s: %s", self.url, err)
            raise TemplateFetchError(f"failed to fetch sidecar templates: {err}")

        try:
            templates = SidecarTemplateList.model_validate_json(res.content)
        except pydantic.ValidationError as err:
            LOG.warning("invalid sidecar templates from %s: %s", self.url, err)
            raise TemplateFetchError(f"invalid sidecar templates: {err}")

        LOG.info("fetched %d sidecar templates from %s", len(templates.items), self.url)
        return templates


class KubernetesTemplateProvider(TemplateProvider):
    def __init__(self, settings: Mapping[str, Any]):
        """Allocate a Kubernetes dynamic client and Sidecar API client"""

        super().__init__()

        try:
            config.load_config()
        except config.ConfigException as err:
            LOG.warning("unable to configure Kubernetes client: %s", err)
            raise ProviderError("unable to configure Kubernetes client")

        k8s_client = client.ApiClient()
        dyn_client = DynamicClient(k8s_client)

        self._client = dyn_client
        self._namespace = settings.get("TEMPLATE_NAMESPACE", DEFAULT_TEMPLATE_NAMESPACE)
        self._sidecar_resource = dyn_client.resources.get(
            api_version=SIDECAR_API_VERSION, kind=SIDECAR_KIND
        )

    @override
    def templates(self):
        try:
            sidecars = self._sidecar_resource.get(namespace=self._namespace)
            templates = SidecarTemplateList.model_validate(sidecars.to_dict())
        except Exception as err:
            LOG.warning(
                "failed to list sidecar templates in namespace %s: %s",
                self._namespace,
                err,
            )
            raise TemplateFetchError(f"failed to list sidecar templates: {err}")

        LOG.info(
            "fetched %d sidecar templates from namespace %s",
            len(templates.items),
            self._namespace,
        )
        return templates


PROVIDERS = {
    "http": HTTPTemplateProvider,
    "kubernetes": KubernetesTemplateProvider,
}
