import logging

from models import Container, SidecarTemplateList

LOG = logging.getLogger(__name__)

ANNOTATION_PREFIX = "pods.injector.com"
INJECT_ANNOTATION = f"{ANNOTATION_PREFIX}/inject"
STATUS_ANNOTATION = f"{ANNOTATION_PREFIX}/status"
STATUS_INJECTED = "injected"

SELECTOR_LABEL = "injector"

IGNORED_NAMESPACES = frozenset(["kube-system", "kube-public"])
TRUTHY_VALUES = frozenset(["y", "yes", "true", "on"])


def mutation_required(namespace: str | None, annotations: dict[str, str] | None) -> bool:
    """Decide whether a pod should be considered for sidecar injection.

    Pods in reserved namespaces are never touched. Pods that already carry
    the status annotation are skipped so that injection happens at most once.
    Otherwise the pod must opt in through the inject annotation.
    """

    if namespace in IGNORED_NAMESPACES:
        LOG.info("Skipping mutation in reserved namespace %s", namespace)
        return False

    annotations = annotations or {}
    status = annotations.get(STATUS_ANNOTATION, "")

    if status.lower() == STATUS_INJECTED:
        required = False
    else:
        required = annotations.get(INJECT_ANNOTATION, "").lower() in TRUTHY_VALUES

    LOG.info(
        "Mutation policy for namespace %s: status %r, required %s",
        namespace,
        status,
        required,
    )
    return required


def select_sidecars(
    labels: dict[str, str] | None, templates: SidecarTemplateList
) -> list[Container]:
    """Return the containers of every template whose selector matches the
    pod's injector label, in template order."""

    selected = (labels or {}).get(SELECTOR_LABEL)

    # If there is no injector label, nothing can match.
    if selected is None:
        return []

    sidecars = []
    for template in templates.items:
        if template.selector.injector != selected:
            continue
        sidecars.extend(template.spec.containers)

    return sidecars
