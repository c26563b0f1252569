"""Reconciliation of a sandbox set: release, promote, scale and clean up its sandboxes."""

from __future__ import annotations

import copy
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, Optional, Sequence, TypeVar

from agentsandbox.cluster import (
    EVENT_TYPE_NORMAL,
    ConflictError,
    EventRecorder,
    InMemoryClient,
    NotFoundError,
    ObjectKey,
)
from agentsandbox.grouping import (
    EXPECTATION_TIMEOUT,
    Group,
    GroupedSandboxes,
    ScaleAction,
    ScaleExpectations,
    clear_and_init_inner_keys,
    find_sandbox_group,
    get_controller_key,
    save_status_from_group,
)
from agentsandbox.resources import (
    ANNOTATION_LOCK,
    ANNOTATION_OWNER,
    CONDITION_READY,
    CONDITION_TRUE,
    LABEL_SANDBOX_ID,
    LABEL_SANDBOX_POOL,
    LABEL_SANDBOX_STATE,
    LABEL_TEMPLATE_HASH,
    SANDBOX_SET_KIND,
    SANDBOX_STATE_AVAILABLE,
    SANDBOX_STATE_KILLING,
    ObjectMeta,
    Sandbox,
    SandboxSet,
    SandboxSetStatus,
    SandboxSpec,
    get_sandbox_condition,
    new_controller_ref,
)
from agentsandbox.revision import CONTROLLER_REVISION_HASH_LABEL, new_revision
from agentsandbox.sandbox_controller import ReconcileResult

logger = logging.getLogger(__name__)

INITIAL_BATCH_SIZE = 16
SCALE_UP_COOLDOWN = 5.0
EXPIRED_EXPECTATION_REQUEUE = 10.0
CONFLICT_RETRIES = 5
OWNER_MANAGER_SCALE_DOWN = "sandbox-manager-scale-down"

EVENT_SANDBOX_AVAILABLE = "SandboxAvailable"
EVENT_SANDBOX_CREATED = "SandboxCreated"
EVENT_SANDBOX_SCALED_DOWN = "SandboxScaledDown"
EVENT_SANDBOX_RELEASED = "SandboxReleased"
EVENT_FAILED_SANDBOX_DELETED = "FailedSandboxDeleted"

_T = TypeVar("_T")


class ReconcileError(Exception):
    """One or more steps of a reconcile failed; the result is still meaningful."""

    def __init__(self, errors: Sequence[BaseException], result: ReconcileResult) -> None:
        super().__init__("\n".join(str(error) for error in errors))
        self.errors = list(errors)
        self.result = result


def _do_slowly(
    items: Iterable[_T], action: Callable[[_T], None], initial_batch: int = INITIAL_BATCH_SIZE
) -> tuple[int, Optional[BaseException]]:
    """Run action over items in doubling batches, stopping after a batch with a failure.

    Returns the number of successes and the first failure, if any.
    """
    pending = list(items)
    successes = 0
    batch_size = min(len(pending), initial_batch)
    while batch_size > 0:
        batch, pending = pending[:batch_size], pending[batch_size:]
        failures: list[BaseException] = []
        with ThreadPoolExecutor(max_workers=batch_size) as pool:
            for future in [pool.submit(action, item) for item in batch]:
                error = future.exception()
                if error is not None:
                    failures.append(error)
        successes += len(batch) - len(failures)
        if failures:
            return successes, failures[0]
        batch_size = min(2 * batch_size, len(pending))
    return successes, None


def _retry_on_conflict(attempt: Callable[[], None]) -> None:
    for remaining in range(CONFLICT_RETRIES - 1, -1, -1):
        try:
            attempt()
            return
        except ConflictError:
            if remaining == 0:
                raise


class SandboxSetReconciler:
    """Keeps a sandbox set's pool of unclaimed sandboxes at the requested size."""

    def __init__(
        self,
        client: InMemoryClient,
        recorder: Optional[EventRecorder] = None,
        expectations: Optional[ScaleExpectations] = None,
    ) -> None:
        self.client = client
        self.recorder = recorder if recorder is not None else EventRecorder()
        self.expectations = expectations if expectations is not None else ScaleExpectations()
        self._scale_up_record: dict[str, float] = {}
        self._record_lock = threading.Lock()

    def init_new_status(self, sandbox_set: SandboxSet) -> SandboxSetStatus:
        """A copy of the set's status with the current revision and generation."""
        status = copy.deepcopy(sandbox_set.status)
        revision = new_revision(sandbox_set, 0, None)
        status.update_revision = revision.metadata.labels[CONTROLLER_REVISION_HASH_LABEL]
        status.observed_generation = sandbox_set.metadata.generation
        return status

    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """Reconcile the set stored under key.

        Raises ReconcileError, carrying the result, when any step failed.
        """
        started = time.monotonic()
        try:
            sbs: SandboxSet = self.client.get(SandboxSet, key)
        except NotFoundError:
            self.expectations.delete_expectations(str(key))
            return ReconcileResult()

        new_status = self.init_new_status(sbs)
        groups = self._group_all_sandboxes(sbs)
        actual_replicas = save_status_from_group(new_status, groups)
        if not new_status.selector:
            new_status.selector = f"{LABEL_SANDBOX_POOL}={sbs.metadata.name}"

        errors: list[BaseException] = []

        error = self._release_used(groups.used, sbs)
        if error is not None:
            logger.error("failed to release control of used sandboxes: %s", error)
            errors.append(error)

        error = self._process_created(groups.creating, sbs)
        if error is not None:
            logger.error("failed to process creating sandboxes: %s", error)
            errors.append(error)

        requeue_after = 0.0
        controller_key = get_controller_key(sbs)
        satisfied, unsatisfied_for, dirty = self.expectations.satisfied_expectations(
            controller_key
        )
        if satisfied:
            new_status.replicas, requeue_after, error = self._perform_scale(
                groups, sbs.spec.replicas, actual_replicas, sbs, new_status.update_revision
            )
            if error is not None:
                logger.error("failed to perform scale: %s", error)
                errors.append(error)
        elif unsatisfied_for > EXPECTATION_TIMEOUT:
            requeue_after = EXPIRED_EXPECTATION_REQUEUE
            self.expectations.delete_expectations(controller_key)
            logger.info("expectations of %s timed out and were dropped", controller_key)
        else:
            requeue_after = EXPECTATION_TIMEOUT - unsatisfied_for
            logger.info("waiting for expectations of %s: %s", controller_key, dirty)

        error = self._delete_failed(groups.failed)
        if error is not None:
            logger.error("failed to delete failed sandboxes: %s", error)
            errors.append(error)

        logger.info("reconcile of %s done in %.3fs", key, time.monotonic() - started)
        try:
            self._update_status(new_status, sbs)
        except Exception as exc:
            logger.error("failed to update sandbox set status: %s", exc)
            errors.append(exc)

        result = ReconcileResult(requeue_after)
        if errors:
            raise ReconcileError(errors, result)
        return result

    # grouping ---------------------------------------------------------------

    def _group_all_sandboxes(self, sbs: SandboxSet) -> GroupedSandboxes:
        controller_key = get_controller_key(sbs)
        sandboxes = self.client.list(
            Sandbox, namespace=sbs.metadata.namespace, owner_uid=sbs.metadata.uid
        )
        groups = GroupedSandboxes()
        buckets = {
            Group.CREATING: groups.creating,
            Group.AVAILABLE: groups.available,
            Group.USED: groups.used,
            Group.FAILED: groups.failed,
        }
        for sbx in sandboxes:
            self.expectations.observe_scale(controller_key, ScaleAction.CREATE, sbx.metadata.name)
            group, reason = find_sandbox_group(sbx)
            bucket = buckets.get(group)
            if bucket is None:
                raise ValueError(f"cannot find group for sandbox {sbx.metadata.name}")
            bucket.append(sbx)
            logger.debug("sandbox %s is in group %s (%s)", sbx.metadata.name, group.value, reason)
        logger.info(
            "grouped %d sandboxes: creating=%d available=%d used=%d failed=%d",
            len(sandboxes),
            len(groups.creating),
            len(groups.available),
            len(groups.used),
            len(groups.failed),
        )
        return groups

    # step 1: release --------------------------------------------------------

    def _release_used(self, used: list[Sandbox], sbs: SandboxSet) -> Optional[BaseException]:
        def release(sbx: Sandbox) -> None:
            key = ObjectKey.of(sbx)

            def attempt() -> None:
                latest: Sandbox = self.client.get(Sandbox, key)
                refs = latest.metadata.owner_references
                for position, ref in enumerate(refs):
                    if ref.uid == sbs.metadata.uid:
                        del refs[position]
                        self.client.update(latest)
                        logger.info("sandbox %s released", key)
                        self.recorder.eventf(
                            sbs,
                            EVENT_TYPE_NORMAL,
                            EVENT_SANDBOX_RELEASED,
                            "Sandbox control %s is released for being used",
                            key,
                        )
                        break

            _retry_on_conflict(attempt)

        _, error = _do_slowly(used, release)
        return error

    # step 2: promote ready sandboxes ------------------------------------------

    def _process_created(self, creating: list[Sandbox], sbs: SandboxSet) -> Optional[BaseException]:
        def process(sbx: Sandbox) -> None:
            key = ObjectKey.of(sbx)

            def attempt() -> None:
                latest: Sandbox = self.client.get(Sandbox, key)
                cond = get_sandbox_condition(latest.status, CONDITION_READY)
                if cond is None or cond.status != CONDITION_TRUE:
                    return
                self._init_created_sandbox(latest)
                logger.info("sandbox %s is available", key)
                self.recorder.eventf(
                    sbs, EVENT_TYPE_NORMAL, EVENT_SANDBOX_AVAILABLE, "Sandbox %s is available", key
                )

            _retry_on_conflict(attempt)

        _, error = _do_slowly(creating, process)
        return error

    def _init_created_sandbox(self, sbx: Sandbox) -> None:
        labels = sbx.metadata.labels
        if not labels.get(LABEL_SANDBOX_STATE) or not labels.get(LABEL_SANDBOX_ID):
            self.client.patch_labels(
                sbx,
                {
                    LABEL_SANDBOX_ID: sbx.metadata.name,
                    LABEL_SANDBOX_STATE: SANDBOX_STATE_AVAILABLE,
                },
            )

    # step 3: scale ------------------------------------------------------------

    def _perform_scale(
        self,
        groups: GroupedSandboxes,
        expect_replicas: int,
        actual_replicas: int,
        sbs: SandboxSet,
        revision: str,
    ) -> tuple[int, float, Optional[BaseException]]:
        status_replicas = actual_replicas
        key = get_controller_key(sbs)
        offset = expect_replicas - actual_replicas
        if offset > 0:
            logger.info("scale up %s by %d", key, offset)
            successes, error = _do_slowly(range(offset), lambda _: self._create_sandbox(sbs, revision))
            with self._record_lock:
                self._scale_up_record[key] = time.monotonic()
            return status_replicas + successes, 0.0, error
        if offset < 0:
            with self._record_lock:
                last_scale_up = self._scale_up_record.get(key)
            if last_scale_up is not None:
                elapsed = time.monotonic() - last_scale_up
                if elapsed < SCALE_UP_COOLDOWN:
                    requeue_after = SCALE_UP_COOLDOWN - elapsed
                    logger.info("skip scale down of %s, just scaled up", key)
                    return status_replicas, requeue_after, None
            with self._record_lock:
                self._scale_up_record.pop(key, None)
            lock = str(uuid.uuid4())
            logger.info("scale down %s by %d", key, -offset)
            for snapshot in groups.creating + groups.available:
                if offset >= 0:
                    break
                try:
                    deleted = self._scale_down_sandbox(ObjectKey.of(snapshot), lock)
                except Exception as exc:
                    return status_replicas, 0.0, exc
                if deleted:
                    status_replicas -= 1
                    offset += 1
        return status_replicas, 0.0, None

    def _create_sandbox(self, sbs: SandboxSet, revision: str) -> Sandbox:
        template = copy.deepcopy(sbs.spec.template)
        sbx = Sandbox(
            metadata=ObjectMeta(
                generate_name=f"{sbs.metadata.name}-",
                namespace=sbs.metadata.namespace,
                labels=clear_and_init_inner_keys(dict(template.labels)),
                annotations=clear_and_init_inner_keys(dict(template.annotations)),
                owner_references=[new_controller_ref(sbs, SANDBOX_SET_KIND)],
            ),
            spec=SandboxSpec(
                template=template,
                persistent_contents=list(sbs.spec.persistent_contents),
            ),
        )
        sbx.metadata.labels[LABEL_SANDBOX_POOL] = sbs.metadata.name
        sbx.metadata.labels[LABEL_TEMPLATE_HASH] = revision
        self.client.create(sbx)
        self.expectations.expect_scale(get_controller_key(sbs), ScaleAction.CREATE, sbx.metadata.name)
        self.recorder.eventf(
            sbs, EVENT_TYPE_NORMAL, EVENT_SANDBOX_CREATED, "Sandbox %s created", ObjectKey.of(sbx)
        )
        return sbx

    def _scale_down_sandbox(self, key: ObjectKey, lock: str) -> bool:
        try:
            sbx: Sandbox = self.client.get(Sandbox, key)
        except NotFoundError:
            return False
        annotations = sbx.metadata.annotations
        if annotations.get(ANNOTATION_LOCK) and (
            annotations.get(ANNOTATION_OWNER) != OWNER_MANAGER_SCALE_DOWN
        ):
            logger.debug("sandbox %s was claimed before scale down, skip", key)
            return False
        annotations[ANNOTATION_LOCK] = lock
        annotations[ANNOTATION_OWNER] = OWNER_MANAGER_SCALE_DOWN
        sbx.metadata.labels[LABEL_SANDBOX_STATE] = SANDBOX_STATE_KILLING
        try:
            self.client.update(sbx)
        except ConflictError:
            return False
        except Exception as exc:
            raise RuntimeError(f"failed to lock sandbox when scaling down: {exc}") from exc
        self.recorder.eventf(
            sbx, EVENT_TYPE_NORMAL, EVENT_SANDBOX_SCALED_DOWN, "Sandbox %s will be scaled down", key
        )
        return True

    # step 4: garbage collection -------------------------------------------------

    def _delete_failed(self, failed: list[Sandbox]) -> Optional[BaseException]:
        fail_count = 0
        for sbx in failed:
            if sbx.metadata.deletion_timestamp is not None:
                continue
            key = ObjectKey.of(sbx)
            try:
                self.client.delete(sbx)
            except Exception as exc:
                logger.error("failed to delete sandbox %s: %s", key, exc)
                fail_count += 1
            logger.debug("sandbox %s deleted", key)
            self.recorder.eventf(
                sbx, EVENT_TYPE_NORMAL, EVENT_FAILED_SANDBOX_DELETED, "Sandbox %s deleted", key
            )
        if fail_count:
            return RuntimeError(f"failed to delete {fail_count} sandboxes")
        return None

    def _update_status(self, new_status: SandboxSetStatus, sbs: SandboxSet) -> None:
        try:
            clone: SandboxSet = self.client.get(SandboxSet, ObjectKey.of(sbs))
        except NotFoundError:
            return
        if clone.status == new_status:
            return
        clone.status = copy.deepcopy(new_status)
        self.client.update_status(clone)
        logger.debug("updated status of sandbox set %s: %s", ObjectKey.of(sbs), new_status)