"""Sandbox, sandbox-set and pod resource models with condition helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Optional

API_GROUP = "agents.sandbox.io"
GROUP_VERSION = f"{API_GROUP}/v1alpha1"
INTERNAL_PREFIX = f"internal.{API_GROUP}/"

SANDBOX_KIND = "Sandbox"
SANDBOX_SET_KIND = "SandboxSet"
POD_KIND = "Pod"

LABEL_SANDBOX_POOL = INTERNAL_PREFIX + "sandbox-pool"
LABEL_TEMPLATE_HASH = INTERNAL_PREFIX + "template-hash"
LABEL_SANDBOX_STATE = INTERNAL_PREFIX + "sandbox-state"
LABEL_SANDBOX_ID = INTERNAL_PREFIX + "sandbox-id"
ANNOTATION_LOCK = INTERNAL_PREFIX + "lock"
ANNOTATION_OWNER = INTERNAL_PREFIX + "owner"

SANDBOX_STATE_AVAILABLE = "available"
SANDBOX_STATE_RUNNING = "running"
SANDBOX_STATE_PAUSED = "paused"
SANDBOX_STATE_KILLING = "killing"

SANDBOX_FINALIZER = f"{API_GROUP}/sandbox-protection"
POD_ANNOTATION_CREATED_BY = INTERNAL_PREFIX + "created-by"
CREATED_BY_SANDBOX = "sandbox"

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"

CONDITION_READY = "Ready"
CONDITION_PAUSED = "Paused"
CONDITION_RESUMED = "Resumed"

READY_REASON_POD_READY = "PodReady"
PAUSED_REASON_SET_PAUSE = "SetPause"
PAUSED_REASON_DELETE_POD = "DeletePod"
RESUME_REASON_CREATE_POD = "CreatePod"
RESUME_REASON_RESUME_POD = "ResumePod"

POD_PENDING = "Pending"
POD_RUNNING = "Running"
POD_SUCCEEDED = "Succeeded"
POD_FAILED = "Failed"
POD_READY = "Ready"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SandboxPhase(str, Enum):
    """Lifecycle phase of a sandbox."""

    PENDING = "Pending"
    RUNNING = "Running"
    PAUSED = "Paused"
    RESUMING = "Resuming"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    TERMINATING = "Terminating"


@dataclass
class Condition:
    """A status condition of a sandbox."""

    type: str
    status: str = CONDITION_UNKNOWN
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = field(default_factory=_now)


@dataclass
class OwnerReference:
    """A reference from an object to the object that owns it."""

    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = False
    block_owner_deletion: bool = False


@dataclass
class ObjectMeta:
    """Identity and bookkeeping shared by every stored object."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    generate_name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None
    creation_timestamp: Optional[datetime] = None
    generation: int = 0
    resource_version: str = ""


@dataclass
class PodTemplate:
    """Labels, annotations and pod spec used to create a sandbox pod."""

    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    spec: dict[str, Any] = field(default_factory=dict)


@dataclass
class PodInfo:
    """Where the sandbox's pod runs."""

    pod_ip: str = ""
    node_name: str = ""
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class SandboxSpec:
    template: PodTemplate = field(default_factory=PodTemplate)
    paused: bool = False
    shutdown_time: Optional[datetime] = None
    persistent_contents: list[str] = field(default_factory=list)


@dataclass
class SandboxStatus:
    phase: str = ""
    observed_generation: int = 0
    message: str = ""
    conditions: list[Condition] = field(default_factory=list)
    pod_info: PodInfo = field(default_factory=PodInfo)


@dataclass
class Sandbox:
    """A single agent sandbox backed by one pod."""

    kind: ClassVar[str] = SANDBOX_KIND
    api_version: ClassVar[str] = GROUP_VERSION

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: SandboxSpec = field(default_factory=SandboxSpec)
    status: SandboxStatus = field(default_factory=SandboxStatus)


@dataclass
class SandboxSetSpec:
    replicas: int = 0
    template: PodTemplate = field(default_factory=PodTemplate)
    persistent_contents: list[str] = field(default_factory=list)


@dataclass
class SandboxSetStatus:
    observed_generation: int = 0
    replicas: int = 0
    available_replicas: int = 0
    update_revision: str = ""
    selector: str = ""


@dataclass
class SandboxSet:
    """A pool of ready-to-claim sandboxes."""

    kind: ClassVar[str] = SANDBOX_SET_KIND
    api_version: ClassVar[str] = GROUP_VERSION

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: SandboxSetSpec = field(default_factory=SandboxSetSpec)
    status: SandboxSetStatus = field(default_factory=SandboxSetStatus)


@dataclass
class PodCondition:
    type: str
    status: str = CONDITION_UNKNOWN
    last_transition_time: Optional[datetime] = field(default_factory=_now)


@dataclass
class PodStatus:
    phase: str = ""
    pod_ip: str = ""
    conditions: list[PodCondition] = field(default_factory=list)


@dataclass
class Pod:
    """The workload that backs a sandbox."""

    kind: ClassVar[str] = POD_KIND
    api_version: ClassVar[str] = "v1"

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: dict[str, Any] = field(default_factory=dict)
    status: PodStatus = field(default_factory=PodStatus)


@dataclass
class EnsureFuncArgs:
    """Inputs to a phase handler: the pod (if any), the sandbox and the status being built."""

    pod: Optional[Pod]
    box: Sandbox
    new_status: SandboxStatus


def get_sandbox_condition(status: SandboxStatus, cond_type: str) -> Optional[Condition]:
    """The stored condition of the given type, or None."""
    return next((c for c in status.conditions if c.type == cond_type), None)


def set_sandbox_condition(status: SandboxStatus, condition: Condition) -> None:
    """Replace the condition of the same type in place, or append it."""
    for position, existing in enumerate(status.conditions):
        if existing.type == condition.type:
            status.conditions[position] = condition
            return
    status.conditions.append(condition)


def remove_sandbox_condition(status: SandboxStatus, cond_type: str) -> None:
    """Drop every condition of the given type."""
    status.conditions = [c for c in status.conditions if c.type != cond_type]


def get_pod_condition(status: PodStatus, cond_type: str) -> Optional[PodCondition]:
    """The pod condition of the given type, or None."""
    return next((c for c in status.conditions if c.type == cond_type), None)


def new_controller_ref(owner: Any, kind: str) -> OwnerReference:
    """A controlling owner reference pointing at owner, which is of the given kind."""
    return OwnerReference(
        api_version=getattr(owner, "api_version", GROUP_VERSION),
        kind=kind,
        name=owner.metadata.name,
        uid=owner.metadata.uid,
        controller=True,
        block_owner_deletion=True,
    )


def get_controller_of(meta: Any) -> Optional[OwnerReference]:
    """The controlling owner reference of an object or its metadata, or None."""
    meta = getattr(meta, "metadata", meta)
    return next((ref for ref in meta.owner_references if ref.controller), None)