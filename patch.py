import logging

from pydantic_core import PydanticSerializationError

from models import Container, Patch, PatchAction, PatchOp, Pod
from exc import PatchEncodeError

LOG = logging.getLogger(__name__)

CONTAINERS_PATH = "/spec/containers"
ANNOTATIONS_PATH = "/metadata/annotations"


def json_patch_escape(val):
    return val.replace("~", "~0").replace("/", "~1")


def add_containers(
    target: list[Container], added: list[Container], base_path: str = CONTAINERS_PATH
) -> list[PatchAction]:
    """Generate one add operation per injected container.

    When the target list is empty the first container creates the list;
    everything after that is appended to the end.
    """

    patch = []
    first = not target
    for container in added:
        if first:
            first = False
            patch.append(PatchAction(op=PatchOp.ADD, path=base_path, value=[container]))
        else:
            patch.append(
                PatchAction(op=PatchOp.ADD, path=f"{base_path}/-", value=container)
            )

    return patch


def update_annotations(
    target: dict[str, str] | None, added: dict[str, str]
) -> list[PatchAction]:
    patch = []
    for key, value in added.items():
        if not target or not target.get(key):
            patch.append(
                PatchAction(op=PatchOp.ADD, path=ANNOTATIONS_PATH, value={key: value})
            )
        else:
            patch.append(
                PatchAction(
                    op=PatchOp.REPLACE,
                    path=f"{ANNOTATIONS_PATH}/{json_patch_escape(key)}",
                    value=value,
                )
            )

    return patch


def build_patch(
    pod: Pod, sidecars: list[Container], annotations: dict[str, str]
) -> Patch:
    return Patch(
        add_containers(pod.spec.containers, sidecars)
        + update_annotations(pod.metadata.annotations, annotations)
    )


def create_patch(
    pod: Pod, sidecars: list[Container], annotations: dict[str, str]
) -> bytes:
    """Build the JSON patch for a pod and serialize it.

    Raises PatchEncodeError if the operations cannot be serialized.
    """

    patch = build_patch(pod, sidecars, annotations)

    try:
        return patch.model_dump_json(exclude_none=True).encode()
    except PydanticSerializationError as err:
        LOG.error("failed to encode patch: %s", err)
        raise PatchEncodeError(f"failed to encode patch: {err}") from err
