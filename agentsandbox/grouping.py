"""Grouping of a sandbox set's sandboxes, scale expectations and event handling."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

from agentsandbox.cluster import ObjectKey
from agentsandbox.resources import (
    API_GROUP,
    CONDITION_READY,
    CONDITION_TRUE,
    INTERNAL_PREFIX,
    LABEL_SANDBOX_STATE,
    SANDBOX_SET_KIND,
    SANDBOX_STATE_AVAILABLE,
    SANDBOX_STATE_KILLING,
    SANDBOX_STATE_PAUSED,
    SANDBOX_STATE_RUNNING,
    Sandbox,
    SandboxPhase,
    SandboxSet,
    SandboxSetStatus,
    get_controller_of,
    get_sandbox_condition,
)

EXPECTATION_TIMEOUT = 300.0


class _Queue(Protocol):
    def add(self, item: ObjectKey) -> None: ...


class Group(str, Enum):
    """Which bucket a sandbox of a set falls into."""

    CREATING = "creating"
    FAILED = "failed"
    AVAILABLE = "available"
    USED = "used"
    UNKNOWN = "unknown"


class ScaleAction(str, Enum):
    CREATE = "create"
    DELETE = "delete"


@dataclass
class GroupedSandboxes:
    """A set's sandboxes sorted by group."""

    creating: list[Sandbox] = field(default_factory=list)
    available: list[Sandbox] = field(default_factory=list)
    used: list[Sandbox] = field(default_factory=list)
    failed: list[Sandbox] = field(default_factory=list)


class ScaleExpectations:
    """Tracks creations and deletions a controller is waiting to observe."""

    def __init__(self) -> None:
        self._pending: dict[str, dict[ScaleAction, set[str]]] = {}
        self._unsatisfied_since: dict[str, float] = {}
        self._lock = threading.Lock()

    def expect_scale(self, key: str, action: ScaleAction, name: str) -> None:
        with self._lock:
            actions = self._pending.setdefault(key, {})
            actions.setdefault(ScaleAction(action), set()).add(name)

    def observe_scale(self, key: str, action: ScaleAction, name: str) -> None:
        with self._lock:
            actions = self._pending.get(key)
            if actions is None:
                return
            names = actions.get(ScaleAction(action))
            if names is not None:
                names.discard(name)
            if not any(actions.values()):
                del self._pending[key]
                self._unsatisfied_since.pop(key, None)

    def satisfied_expectations(
        self, key: str
    ) -> tuple[bool, float, dict[ScaleAction, list[str]]]:
        """(satisfied, seconds unsatisfied, names still expected per action)."""
        with self._lock:
            actions = self._pending.get(key)
            if actions and any(actions.values()):
                since = self._unsatisfied_since.setdefault(key, time.monotonic())
                dirty = {a: sorted(n) for a, n in actions.items() if n}
                return False, time.monotonic() - since, dirty
            self._unsatisfied_since.pop(key, None)
            return True, 0.0, {}

    def delete_expectations(self, key: str) -> None:
        with self._lock:
            self._pending.pop(key, None)
            self._unsatisfied_since.pop(key, None)


def get_controller_key(sandbox_set: SandboxSet) -> str:
    """namespace/name of a sandbox set."""
    return str(ObjectKey.of(sandbox_set))


def find_sandbox_group(sandbox: Sandbox) -> tuple[Group, str]:
    """The group of a sandbox and the reason it belongs there."""
    if sandbox.metadata.deletion_timestamp is not None:
        return Group.FAILED, "ResourceDeleted"
    phase = sandbox.status.phase
    if phase == "":
        return Group.CREATING, "ResourcePhaseEmpty"
    if phase == SandboxPhase.PENDING.value:
        return Group.CREATING, "ResourcePending"
    if phase == SandboxPhase.FAILED.value:
        return Group.FAILED, "ResourceFailed"
    if phase == SandboxPhase.SUCCEEDED.value:
        return Group.FAILED, "ResourceSucceeded"
    if phase == SandboxPhase.TERMINATING.value:
        return Group.FAILED, "ResourceTerminating"
    state = sandbox.metadata.labels.get(LABEL_SANDBOX_STATE, "")
    by_state = {
        SANDBOX_STATE_RUNNING: (Group.USED, "SandboxStateRunning"),
        SANDBOX_STATE_PAUSED: (Group.USED, "SandboxStatePaused"),
        SANDBOX_STATE_AVAILABLE: (Group.AVAILABLE, "SandboxStateAvailable"),
        SANDBOX_STATE_KILLING: (Group.FAILED, "SandboxStateKilling"),
        "": (Group.CREATING, "SandboxStateNotPatched"),
    }
    return by_state.get(state, (Group.UNKNOWN, "SandboxStateUnknown"))


def clear_and_init_inner_keys(mapping: Optional[dict[str, str]]) -> dict[str, str]:
    """Drop internal keys in place; None becomes a new empty dict."""
    if mapping is None:
        return {}
    for key in [k for k in mapping if k.startswith(INTERNAL_PREFIX)]:
        del mapping[key]
    return mapping


def check_sandbox_ready(sandbox: Sandbox) -> bool:
    cond = get_sandbox_condition(sandbox.status, CONDITION_READY)
    return cond is not None and cond.status == CONDITION_TRUE


def save_status_from_group(status: SandboxSetStatus, groups: GroupedSandboxes) -> int:
    """Record replica counts in status; return the actual replica count."""
    status.available_replicas = len(groups.available)
    status.replicas = len(groups.creating) + len(groups.available)
    return status.replicas


def _group_of(api_version: str) -> Optional[str]:
    parts = api_version.split("/")
    if api_version == "":
        return ""
    if len(parts) == 1:
        return ""
    if len(parts) == 2:
        return parts[0]
    return None


def get_sandbox_set_controller(obj: Any) -> Optional[ObjectKey]:
    """The key of the sandbox set controlling obj, or None."""
    if obj is None:
        return None
    controller = get_controller_of(obj)
    if controller is None:
        return None
    group = _group_of(controller.api_version)
    if group is None or controller.kind != SANDBOX_SET_KIND or group != API_GROUP:
        return None
    return ObjectKey(obj.metadata.namespace, controller.name)


class SandboxEventHandler:
    """Queues the sandbox set behind every sandbox event that matters to it.

    Each method returns whether it queued a request.
    """

    def __init__(self, expectations: ScaleExpectations) -> None:
        self.expectations = expectations

    def create(self, obj: Any, queue: _Queue) -> bool:
        request = get_sandbox_set_controller(obj)
        if request is None:
            return False
        self.expectations.observe_scale(str(request), ScaleAction.CREATE, obj.metadata.name)
        queue.add(request)
        return True

    def update(self, old: Any, new: Any, queue: _Queue) -> bool:
        if old is None or new is None:
            return False
        request = get_sandbox_set_controller(old)
        if request is None:
            return False
        if not isinstance(old, Sandbox) or not isinstance(new, Sandbox):
            return False
        _, old_reason = find_sandbox_group(old)
        new_group, new_reason = find_sandbox_group(new)
        if old_reason != new_reason:
            queue.add(request)
            return True
        if new_group == Group.CREATING and check_sandbox_ready(new):
            # Creating-to-available only happens in reconciliation, so ready ones go through.
            queue.add(request)
            return True
        return False

    def delete(self, obj: Any, queue: _Queue) -> bool:
        request = get_sandbox_set_controller(obj)
        if request is None:
            return False
        queue.add(request)
        return True

    def generic(self, obj: Any, queue: _Queue) -> bool:
        """Generic events never queue a request."""
        return False