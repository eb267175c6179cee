import base64
import functools
import logging
import pydantic

from flask import Flask, Response, request, current_app
from pydantic_core import PydanticSerializationError

from models import (
    BaseModel,
    AdmissionReview,
    AdmissionResponse,
    AdmissionReviewStatus,
    ApiVersion,
    PatchType,
    Pod,
)

import policy
from patch import create_patch
from providers import (
    PROVIDERS,
    DEFAULT_TEMPLATE_NAMESPACE,
    DEFAULT_TEMPLATE_TIMEOUT,
    DEFAULT_TEMPLATE_URL,
    HTTPTemplateProvider,
)
from exc import (
    ApplicationError,
    ConfigurationError,
    PatchEncodeError,
    ProviderError,
    ResponseEncodeError,
    TemplateFetchError,
)

LOG = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

FALSY_VALUES = frozenset(["n", "no", "false", "off"])


class DEFAULTS:
    PROVIDER = HTTPTemplateProvider
    TEMPLATE_URL = DEFAULT_TEMPLATE_URL
    TEMPLATE_TIMEOUT = DEFAULT_TEMPLATE_TIMEOUT
    TEMPLATE_NAMESPACE = DEFAULT_TEMPLATE_NAMESPACE
    FAIL_OPEN = True


def jsonresponse():
    """Transforms the response from a view function into a JSON object."""

    def _outer(func):
        @functools.wraps(func)
        def _inner(*args, **kwargs):
            res = func(*args, **kwargs)
            if not isinstance(res, BaseModel):
                return res

            try:
                body = res.model_dump_json(exclude_none=True)
            except PydanticSerializationError as err:
                LOG.error("failed to encode response: %s", err)
                raise ResponseEncodeError(f"could not encode response: {err}")

            return Response(body, status=200, mimetype="application/json")

        return _inner

    return _outer


def admission_review(
    uid: str,
    allowed: bool,
    api_version: ApiVersion = ApiVersion.V1,
    message: str | None = None,
    patch: bytes | None = None,
) -> AdmissionReview:
    return AdmissionReview(
        apiVersion=api_version,
        response=AdmissionResponse(
            uid=uid,
            allowed=allowed,
            status=AdmissionReviewStatus(message=message) if message else None,
            patchType=PatchType.JSONPatch if patch else None,
            patch=base64.b64encode(patch).decode() if patch else None,
        ),
    )


def inject_sidecars(review: AdmissionReview) -> AdmissionReview:
    """Run the mutation pipeline for a decoded admission review."""

    req = review.request
    version = review.apiVersion

    # Decode the workload object
    if req.object is None:
        LOG.error("request %s does not contain an object", req.uid)
        return admission_review(req.uid, False, version, message="missing object")

    try:
        pod = Pod.model_validate(req.object)
    except pydantic.ValidationError as err:
        LOG.error("could not decode object in request %s: %s", req.uid, err)
        return admission_review(
            req.uid, False, version, message=f"invalid object: {err}"
        )

    namespace = pod.metadata.namespace or req.namespace
    name = pod.metadata.name or req.name
    LOG.info(
        "AdmissionReview for kind=%s namespace=%s name=%s uid=%s operation=%s user=%s",
        req.kind.kind if req.kind else None,
        namespace,
        name,
        req.uid,
        req.operation,
        req.userInfo.username if req.userInfo else None,
    )

    # Check whether this pod wants sidecars at all
    if not policy.mutation_required(namespace, pod.metadata.annotations):
        LOG.info("Skipping mutation for %s/%s due to policy check", namespace, name)
        return admission_review(req.uid, True, version)

    # Retrieve the current set of sidecar templates
    try:
        templates = current_app.provider.templates()
    except TemplateFetchError as err:
        if current_app.config["FAIL_OPEN"]:
            LOG.error("failed to get sidecar templates, allowing unmodified: %s", err)
            return admission_review(req.uid, True, version)

        LOG.error("failed to get sidecar templates, denying: %s", err)
        return admission_review(req.uid, False, version, message=str(err))

    # Select the sidecars that match this pod
    sidecars = policy.select_sidecars(pod.metadata.labels, templates)
    if not sidecars:
        LOG.info("No sidecar templates match %s/%s", namespace, name)
        return admission_review(req.uid, True, version)

    LOG.info(
        "Injecting sidecars into %s/%s: %s",
        namespace,
        name,
        ", ".join(sidecar.name for sidecar in sidecars),
    )

    # Generate JSON Patch to add sidecars and mark the pod as injected
    try:
        patch = create_patch(
            pod, sidecars, {policy.STATUS_ANNOTATION: policy.STATUS_INJECTED}
        )
    except PatchEncodeError as err:
        return admission_review(req.uid, False, version, message=str(err))

    LOG.info("AdmissionResponse for %s: patch=%s", req.uid, patch.decode())
    return admission_review(req.uid, True, version, patch=patch)


@jsonresponse()
def mutate_pod():
    body = request.get_data()
    if not body:
        LOG.error("empty body")
        return "empty body", 400, {"content-type": "text/plain"}

    if not request.is_json:
        LOG.error("Content-Type=%s, expect application/json", request.content_type)
        return (
            "invalid Content-Type, expect application/json",
            415,
            {"content-type": "text/plain"},
        )

    try:
        review = AdmissionReview.model_validate_json(body)
    except pydantic.ValidationError as err:
        LOG.error("could not decode body: %s", err)
        return admission_review("", False, message=f"invalid request: {err}")

    if review.request is None:
        LOG.error("admission review does not contain a request")
        return admission_review(
            "", False, review.apiVersion, message="invalid request: missing request"
        )

    return inject_sidecars(review)


def parse_flag(name, val) -> bool:
    """Interpret a boolean setting.

    Values that are not valid JSON reach the config as strings, so accept the
    usual yes/no spellings as well and refuse anything else.
    """

    if isinstance(val, bool):
        return val

    if isinstance(val, str):
        if val.lower() in policy.TRUTHY_VALUES:
            return True
        if val.lower() in FALSY_VALUES:
            return False

    LOG.error("Invalid value for %s: %r", name, val)
    raise ConfigurationError(f"{name} must be a boolean, got {val!r}")


def handle_applicationerror(err):
    return str(err), 500, {"content-type": "text/plain"}


def health():
    return "OK", 200, {"content-type": "text/plain"}


def create_app(**config) -> Flask:
    """Use an application factory [1] to create the Flask app.

    This makes it much easier to write tests for the application, since we can
    set up the test environment before instantiating the app. This is difficult
    to do if the app is created at `import` time.

    [1]: https://flask.palletsprojects.com/en/3.0.x/patterns/appfactories/
    """

    app = Flask(__name__)
    app.config.from_object(DEFAULTS)
    app.config.from_prefixed_env("SIDECAR_INJECTOR")
    if config:
        app.config.update(config)

    app.config["FAIL_OPEN"] = parse_flag("FAIL_OPEN", app.config["FAIL_OPEN"])

    provider = app.config["PROVIDER"]
    if isinstance(provider, str):
        if provider not in PROVIDERS:
            LOG.error("Unknown template provider %s", provider)
            raise ProviderError(f"unknown template provider: {provider}")
        provider = PROVIDERS[provider]

    app.provider = provider(app.config)

    app.errorhandler(ApplicationError)(handle_applicationerror)
    app.add_url_rule("/healthz", view_func=health)
    app.add_url_rule("/mutate", view_func=mutate_pod, methods=["POST"])

    return app
