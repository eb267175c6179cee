import base64
from typing import Any, Literal
from pydantic import (
    BaseModel,
    ConfigDict,
    RootModel,
    model_validator,
    field_validator,
)
from enum import StrEnum


class ApiVersion(StrEnum):
    V1 = "admission.k8s.io/v1"
    V1BETA1 = "admission.k8s.io/v1beta1"


class Operation(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


class PatchType(StrEnum):
    JSONPatch = "JSONPatch"


class PatchOp(StrEnum):
    REPLACE = "replace"
    ADD = "add"


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#container-v1-core
class Container(BaseModel):
    """A container descriptor.

    Only the name is required; every other field is carried through to the
    patch untouched.
    """

    model_config = ConfigDict(extra="allow")

    name: str
    image: str | None = None


class PatchAction(BaseModel):
    op: PatchOp
    path: str
    value: list[Container] | Container | dict[str, str] | str


# https://jsonpatch.com/
Patch = RootModel[list[PatchAction]]


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#status-v1-meta
class AdmissionReviewStatus(BaseModel):
    message: str


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionResponse
class AdmissionResponse(BaseModel):
    allowed: bool
    status: AdmissionReviewStatus | None = None
    uid: str = ""
    patchType: PatchType | None = None
    patch: str | None = None

    @field_validator("patch", mode="before")
    @classmethod
    def validate_patch(cls, val):
        if isinstance(val, Patch):
            val = base64.b64encode(val.model_dump_json(exclude_none=True).encode())
        elif isinstance(val, (str, bytes)):
            # Make sure the base64 string contains valid data.
            Patch.model_validate_json(base64.b64decode(val))
        return val

    @model_validator(mode="after")
    def validate_model(self):
        if self.patch and not self.patchType:
            raise ValueError("missing patchType field")
        if self.patchType and not self.patch:
            raise ValueError(f"patchType is {self.patchType} but there is no patch")
        if self.patch and not self.allowed:
            raise ValueError("a patch requires allowed to be true")

        return self


class GroupVersionKind(BaseModel):
    group: str = ""
    version: str = ""
    kind: str = ""


class UserInfo(BaseModel):
    username: str | None = None
    uid: str | None = None
    groups: list[str] = []


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionRequest
class AdmissionRequest(BaseModel):
    uid: str
    kind: GroupVersionKind | None = None
    name: str | None = None
    namespace: str | None = None
    operation: Operation = Operation.CREATE
    userInfo: UserInfo | None = None
    object: dict[str, Any] | None = None


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionReview
class AdmissionReview(BaseModel):
    apiVersion: ApiVersion = ApiVersion.V1
    kind: Literal["AdmissionReview"] = "AdmissionReview"
    request: AdmissionRequest | None = None
    response: AdmissionResponse | None = None

    @model_validator(mode="after")
    def validate_model(self):
        if not (self.request or self.response):
            raise ValueError("must contain a request or a response")

        return self


class Metadata(BaseModel):
    name: str | None = None
    namespace: str | None = None
    labels: dict[str, str] = {}
    annotations: dict[str, str] | None = None

    # A null label map is the same as no labels.
    @field_validator("labels", mode="before")
    @classmethod
    def validate_labels(cls, val):
        return {} if val is None else val


class PodSpec(BaseModel):
    model_config = ConfigDict(extra="allow")

    containers: list[Container] = []

    @field_validator("containers", mode="before")
    @classmethod
    def validate_containers(cls, val):
        return [] if val is None else val


class Pod(BaseModel):
    metadata: Metadata = Metadata()
    spec: PodSpec = PodSpec()

    @field_validator("metadata", "spec", mode="before")
    @classmethod
    def validate_sections(cls, val):
        return {} if val is None else val


class SidecarSelector(BaseModel):
    injector: str


class SidecarSpec(BaseModel):
    containers: list[Container] = []


class SidecarTemplate(BaseModel):
    selector: SidecarSelector
    spec: SidecarSpec


class SidecarTemplateList(BaseModel):
    items: list[SidecarTemplate] = []
