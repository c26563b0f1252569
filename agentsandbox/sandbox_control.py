"""Per-phase handling of a sandbox's pod and status."""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod

from agentsandbox.cluster import AlreadyExistsError, InMemoryClient, update_finalizer
from agentsandbox.resources import (
    CONDITION_FALSE,
    CONDITION_PAUSED,
    CONDITION_READY,
    CONDITION_TRUE,
    CREATED_BY_SANDBOX,
    PAUSED_REASON_DELETE_POD,
    POD_ANNOTATION_CREATED_BY,
    POD_READY,
    POD_RUNNING,
    READY_REASON_POD_READY,
    SANDBOX_FINALIZER,
    SANDBOX_KIND,
    Condition,
    EnsureFuncArgs,
    ObjectMeta,
    Pod,
    PodInfo,
    Sandbox,
    SandboxPhase,
    SandboxStatus,
    get_pod_condition,
    get_sandbox_condition,
    new_controller_ref,
    set_sandbox_condition,
)

logger = logging.getLogger(__name__)

COMMON_CONTROL_NAME = "common"
POD_NOT_FOUND_MESSAGE = "Sandbox Pod Not Found"


class SandboxControl(ABC):
    """Drives a sandbox towards the state its phase calls for."""

    @abstractmethod
    def ensure_pending(self, args: EnsureFuncArgs) -> None:
        """Ensure the sandbox status phase is Pending."""

    @abstractmethod
    def ensure_running(self, args: EnsureFuncArgs) -> None:
        """Ensure the sandbox status phase is Running."""

    @abstractmethod
    def ensure_paused(self, args: EnsureFuncArgs) -> None:
        """Ensure the sandbox status phase is Paused."""

    @abstractmethod
    def ensure_resuming(self, args: EnsureFuncArgs) -> None:
        """Ensure the sandbox status phase is Resuming."""

    @abstractmethod
    def ensure_terminating(self, args: EnsureFuncArgs) -> None:
        """Ensure the sandbox status phase is Terminating."""


def _sync_ready_condition(status: SandboxStatus, pod: Pod) -> None:
    """Copy the pod's readiness into the sandbox's Ready condition."""
    pod_cond = get_pod_condition(pod.status, POD_READY)
    cond = get_sandbox_condition(status, CONDITION_READY)
    if cond is None:
        cond = Condition(
            type=CONDITION_READY,
            status=CONDITION_FALSE,
            reason=READY_REASON_POD_READY,
        )
    if pod_cond is not None and pod_cond.status != cond.status:
        cond.status = pod_cond.status
        cond.last_transition_time = pod_cond.last_transition_time
    set_sandbox_condition(status, cond)


class CommonControl(SandboxControl):
    """The default control: one pod per sandbox, deleted to pause."""

    def __init__(self, client: InMemoryClient) -> None:
        self.client = client

    def ensure_pending(self, args: EnsureFuncArgs) -> None:
        if args.pod is None:
            self._create_pod(args.box)
        elif args.pod.status.phase == POD_RUNNING:
            args.new_status.phase = SandboxPhase.RUNNING.value
            _sync_ready_condition(args.new_status, args.pod)

    def ensure_running(self, args: EnsureFuncArgs) -> None:
        pod, status = args.pod, args.new_status
        if pod is None:
            status.phase = SandboxPhase.FAILED.value
            status.message = POD_NOT_FOUND_MESSAGE
            return
        status.pod_info = PodInfo(
            pod_ip=pod.status.pod_ip,
            node_name=pod.spec.get("nodeName", ""),
        )
        _sync_ready_condition(status, pod)

    def ensure_paused(self, args: EnsureFuncArgs) -> None:
        pod, status = args.pod, args.new_status
        cond = get_sandbox_condition(status, CONDITION_PAUSED)
        if cond is None:
            cond = Condition(
                type=CONDITION_PAUSED,
                status=CONDITION_FALSE,
                reason=PAUSED_REASON_DELETE_POD,
            )
            set_sandbox_condition(status, cond)
        elif cond.status == CONDITION_TRUE:
            return

        ready = get_sandbox_condition(status, CONDITION_READY)
        if ready is not None and ready.status == CONDITION_TRUE:
            ready.status = CONDITION_FALSE
            ready.last_transition_time = Condition(type=CONDITION_READY).last_transition_time
            set_sandbox_condition(status, ready)

        if pod is None:
            cond.status = CONDITION_TRUE
            set_sandbox_condition(status, cond)
            return
        if pod.metadata.deletion_timestamp is not None:
            logger.info("sandbox %s waits for its pod to be deleted", args.box.metadata.name)
            return
        self.client.delete(pod)
        logger.info("deleted pod of sandbox %s", args.box.metadata.name)

    def ensure_resuming(self, args: EnsureFuncArgs) -> None:
        pod, status = args.pod, args.new_status
        if pod is None:
            self._create_pod(args.box)
            return
        if pod.status.phase == POD_RUNNING:
            status.phase = SandboxPhase.RUNNING.value
            _sync_ready_condition(status, pod)

    def ensure_terminating(self, args: EnsureFuncArgs) -> None:
        pod, box = args.pod, args.box
        if pod is None:
            update_finalizer(self.client, box, False, SANDBOX_FINALIZER)
            logger.info("removed finalizer of sandbox %s", box.metadata.name)
            return
        if pod.metadata.deletion_timestamp is not None:
            logger.info("pod of sandbox %s is being deleted", box.metadata.name)
            return
        self.client.delete(pod)
        logger.info("deleted pod of sandbox %s", box.metadata.name)

    def _create_pod(self, box: Sandbox) -> Pod:
        template = box.spec.template
        pod = Pod(
            metadata=ObjectMeta(
                namespace=box.metadata.namespace,
                name=box.metadata.name,
                owner_references=[new_controller_ref(box, SANDBOX_KIND)],
                labels=dict(template.labels),
                annotations=dict(template.annotations),
            ),
            spec=copy.deepcopy(template.spec),
        )
        pod.metadata.annotations[POD_ANNOTATION_CREATED_BY] = CREATED_BY_SANDBOX
        try:
            self.client.create(pod)
        except AlreadyExistsError:
            pass
        logger.info("created pod for sandbox %s", box.metadata.name)
        return pod


def new_sandbox_controls(client: InMemoryClient) -> dict[str, SandboxControl]:
    """The available controls keyed by name."""
    return {COMMON_CONTROL_NAME: CommonControl(client)}