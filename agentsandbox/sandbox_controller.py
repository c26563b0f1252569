"""Reconciliation of a single sandbox and the pod that backs it."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from agentsandbox.cluster import InMemoryClient, NotFoundError, ObjectKey, update_finalizer
from agentsandbox.resources import (
    CONDITION_FALSE,
    CONDITION_PAUSED,
    CONDITION_READY,
    CONDITION_RESUMED,
    CONDITION_TRUE,
    POD_ANNOTATION_CREATED_BY,
    POD_FAILED,
    POD_SUCCEEDED,
    RESUME_REASON_CREATE_POD,
    SANDBOX_FINALIZER,
    Condition,
    EnsureFuncArgs,
    ObjectMeta,
    Pod,
    Sandbox,
    SandboxPhase,
    SandboxStatus,
    get_sandbox_condition,
    remove_sandbox_condition,
    set_sandbox_condition,
)
from agentsandbox.sandbox_control import (
    COMMON_CONTROL_NAME,
    SandboxControl,
    new_sandbox_controls,
)

logger = logging.getLogger(__name__)

POD_DELETING_REQUEUE = 3.0


class _Queue(Protocol):
    def add(self, item: ObjectKey) -> None: ...


@dataclass(frozen=True)
class ReconcileResult:
    """What the reconciler asks of its caller; requeue_after is in seconds."""

    requeue_after: float = 0.0


class SandboxReconciler:
    """Moves a sandbox and its pod towards the state the sandbox asks for."""

    def __init__(
        self,
        client: InMemoryClient,
        controls: Optional[dict[str, SandboxControl]] = None,
    ) -> None:
        self.client = client
        self.controls = controls if controls is not None else new_sandbox_controls(client)

    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """Reconcile the sandbox stored under key; errors propagate for a retry."""
        try:
            box: Sandbox = self.client.get(Sandbox, key)
        except NotFoundError:
            return ReconcileResult()
        if box.status.phase in (SandboxPhase.FAILED.value, SandboxPhase.SUCCEEDED.value):
            return ReconcileResult()

        meta = box.metadata
        if meta.deletion_timestamp is None and SANDBOX_FINALIZER not in meta.finalizers:
            update_finalizer(self.client, box, True, SANDBOX_FINALIZER)
            logger.info("added finalizer to sandbox %s", key)

        now = datetime.now(timezone.utc)
        requeue_after = 0.0
        shutdown = box.spec.shutdown_time
        if shutdown is not None and meta.deletion_timestamp is None:
            if shutdown < now:
                logger.info("sandbox %s reached its shutdown time, deleting", key)
                self.client.delete(box)
                return ReconcileResult()
            requeue_after = (shutdown - now).total_seconds()

        new_status = copy.deepcopy(box.status)
        new_status.observed_generation = meta.generation
        if not new_status.phase:
            new_status.phase = SandboxPhase.PENDING.value

        pod: Optional[Pod]
        try:
            pod = self.client.get(Pod, ObjectKey(meta.namespace, meta.name))
        except NotFoundError:
            pod = None
        if pod is not None:
            if pod.metadata.deletion_timestamp is not None:
                return ReconcileResult(min(requeue_after, POD_DELETING_REQUEUE))
            if pod.status.phase == POD_SUCCEEDED:
                new_status.phase = SandboxPhase.SUCCEEDED.value
                self._update_status(new_status, box)
                return ReconcileResult(requeue_after)
            if (
                pod.status.phase == POD_FAILED
                and box.status.phase != SandboxPhase.PAUSED.value
            ):
                # A paused sandbox's pod fails while it is torn down; that is expected.
                new_status.phase = SandboxPhase.FAILED.value
                self._update_status(new_status, box)
                return ReconcileResult(requeue_after)

        if meta.deletion_timestamp is not None:
            new_status.phase = SandboxPhase.TERMINATING.value
            ready = get_sandbox_condition(new_status, CONDITION_READY)
            if ready is not None and ready.status == CONDITION_TRUE:
                ready.status = CONDITION_FALSE
                ready.last_transition_time = datetime.now(timezone.utc)
                set_sandbox_condition(new_status, ready)
        elif box.spec.paused and box.status.phase == SandboxPhase.RUNNING.value:
            new_status.phase = SandboxPhase.PAUSED.value
        elif not box.spec.paused and new_status.phase == SandboxPhase.PAUSED.value:
            remove_sandbox_condition(new_status, CONDITION_PAUSED)
            new_status.phase = SandboxPhase.RESUMING.value
            set_sandbox_condition(
                new_status,
                Condition(
                    type=CONDITION_RESUMED,
                    status=CONDITION_FALSE,
                    reason=RESUME_REASON_CREATE_POD,
                ),
            )

        control = self._control_for(pod)
        handlers = {
            SandboxPhase.PENDING.value: control.ensure_pending,
            SandboxPhase.RUNNING.value: control.ensure_running,
            SandboxPhase.PAUSED.value: control.ensure_paused,
            SandboxPhase.RESUMING.value: control.ensure_resuming,
            SandboxPhase.TERMINATING.value: control.ensure_terminating,
        }
        handler = handlers.get(new_status.phase)
        if handler is None:
            logger.info("sandbox %s has an invalid phase %r", key, box.status.phase)
            return ReconcileResult(requeue_after)
        handler(EnsureFuncArgs(pod=pod, box=box, new_status=new_status))
        self._update_status(new_status, box)
        return ReconcileResult(requeue_after)

    def _update_status(self, new_status: SandboxStatus, box: Sandbox) -> None:
        if box.status == new_status:
            return
        target = Sandbox(
            metadata=ObjectMeta(namespace=box.metadata.namespace, name=box.metadata.name)
        )
        self.client.patch_status(target, new_status)
        logger.info("updated status of sandbox %s: %s", ObjectKey.of(box), new_status)

    def _control_for(self, pod: Optional[Pod]) -> SandboxControl:
        return self.controls[COMMON_CONTROL_NAME]


class SandboxPodEventHandler:
    """Queues the sandbox behind every pod the sandbox controller created.

    Each method returns whether it queued a request.
    """

    @staticmethod
    def _enqueue(obj: Any, queue: _Queue) -> bool:
        if obj.metadata.annotations.get(POD_ANNOTATION_CREATED_BY):
            queue.add(ObjectKey.of(obj))
            return True
        return False

    def create(self, obj: Any, queue: _Queue) -> bool:
        return self._enqueue(obj, queue)

    def update(self, old: Any, new: Any, queue: _Queue) -> bool:
        return self._enqueue(new, queue)

    def delete(self, obj: Any, queue: _Queue) -> bool:
        return self._enqueue(obj, queue)

    def generic(self, obj: Any, queue: _Queue) -> bool:
        """Generic events never queue a request."""
        return False