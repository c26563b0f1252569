from datetime import datetime, timezone

import pytest

from agentsandbox.cluster import InMemoryClient, NotFoundError, ObjectKey
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
    PodCondition,
    PodStatus,
    PodTemplate,
    Sandbox,
    SandboxSpec,
    SandboxStatus,
    get_sandbox_condition,
    new_controller_ref,
)
from agentsandbox.sandbox_control import (
    COMMON_CONTROL_NAME,
    CommonControl,
    new_sandbox_controls,
)

OT = datetime(2025, 9, 28, 11, 0, 0, tzinfo=timezone.utc)
KEY = ObjectKey("default", "test-box-1")
IMAGE = "mirrors-ssl.aliyuncs.com/centos:centos7"
NODE = "virtual-kubelet-cn-beijing-d"


def make_box(labels=None, annotations=None):
    return Sandbox(
        metadata=ObjectMeta(
            name="test-box-1", namespace="default", finalizers=[SANDBOX_FINALIZER]
        ),
        spec=SandboxSpec(
            template=PodTemplate(
                labels=dict(labels or {}),
                annotations=dict(annotations or {}),
                spec={"containers": [{"name": "main", "image": IMAGE}]},
            )
        ),
    )


def make_pod(box, ready=CONDITION_TRUE, finalizers=()):
    return Pod(
        metadata=ObjectMeta(
            name=box.metadata.name,
            namespace=box.metadata.namespace,
            owner_references=[new_controller_ref(box, SANDBOX_KIND)],
            finalizers=list(finalizers),
        ),
        spec={"containers": [{"name": "main", "image": IMAGE}], "nodeName": NODE},
        status=PodStatus(
            phase=POD_RUNNING,
            pod_ip="172.17.0.61",
            conditions=[PodCondition(POD_READY, ready, OT)],
        ),
    )


@pytest.fixture
def client():
    return InMemoryClient()


def test_new_sandbox_controls_registers_common(client):
    controls = new_sandbox_controls(client)
    assert list(controls) == [COMMON_CONTROL_NAME]
    assert isinstance(controls["common"], CommonControl)


def test_pending_without_pod_creates_pod(client):
    box = make_box(labels={"app": "demo"}, annotations={"note": "kept"})
    client.create(box)
    status = SandboxStatus(phase="Pending")
    CommonControl(client).ensure_pending(EnsureFuncArgs(None, box, status))

    pod = client.get(Pod, KEY)
    assert pod.metadata.annotations[POD_ANNOTATION_CREATED_BY] == CREATED_BY_SANDBOX
    assert pod.metadata.annotations["note"] == "kept"
    assert pod.metadata.labels == {"app": "demo"}
    assert pod.spec == box.spec.template.spec
    ref = pod.metadata.owner_references[0]
    assert (ref.kind, ref.uid, ref.controller) == ("Sandbox", box.metadata.uid, True)
    assert POD_ANNOTATION_CREATED_BY not in box.spec.template.annotations
    assert status.phase == "Pending"


def test_pending_create_is_idempotent(client):
    box = make_box()
    client.create(box)
    control = CommonControl(client)
    control.ensure_pending(EnsureFuncArgs(None, box, SandboxStatus()))
    control.ensure_pending(EnsureFuncArgs(None, box, SandboxStatus()))
    assert len(client.list(Pod)) == 1


def test_pending_with_running_pod_moves_to_running(client):
    box = make_box()
    status = SandboxStatus(phase="Pending")
    CommonControl(client).ensure_pending(
        EnsureFuncArgs(make_pod(box, ready=CONDITION_FALSE), box, status)
    )
    assert status.phase == "Running"
    cond = get_sandbox_condition(status, CONDITION_READY)
    assert (cond.status, cond.reason) == (CONDITION_FALSE, READY_REASON_POD_READY)


def test_running_without_pod_fails(client):
    box = make_box()
    status = SandboxStatus(phase="Running")
    CommonControl(client).ensure_running(EnsureFuncArgs(None, box, status))
    assert status.phase == "Failed"
    assert status.message == "Sandbox Pod Not Found"


def test_running_copies_pod_info_and_readiness(client):
    box = make_box()
    status = SandboxStatus(
        phase="Running", conditions=[Condition(CONDITION_READY, CONDITION_FALSE)]
    )
    CommonControl(client).ensure_running(EnsureFuncArgs(make_pod(box), box, status))
    assert status.pod_info.pod_ip == "172.17.0.61"
    assert status.pod_info.node_name == NODE
    cond = get_sandbox_condition(status, CONDITION_READY)
    assert (cond.status, cond.last_transition_time) == (CONDITION_TRUE, OT)


def test_paused_deletes_pod_and_clears_ready(client):
    box = make_box()
    pod = make_pod(box)
    client.create(pod)
    status = SandboxStatus(
        phase="Paused", conditions=[Condition(CONDITION_READY, CONDITION_TRUE)]
    )
    CommonControl(client).ensure_paused(EnsureFuncArgs(pod, box, status))
    assert get_sandbox_condition(status, CONDITION_READY).status == CONDITION_FALSE
    paused = get_sandbox_condition(status, CONDITION_PAUSED)
    assert (paused.status, paused.reason) == (CONDITION_FALSE, PAUSED_REASON_DELETE_POD)
    with pytest.raises(NotFoundError):
        client.get(Pod, KEY)


def test_paused_without_pod_completes(client):
    box = make_box()
    status = SandboxStatus(phase="Paused")
    CommonControl(client).ensure_paused(EnsureFuncArgs(None, box, status))
    assert get_sandbox_condition(status, CONDITION_PAUSED).status == CONDITION_TRUE


def test_paused_already_done_leaves_pod(client):
    box = make_box()
    pod = make_pod(box)
    client.create(pod)
    status = SandboxStatus(
        phase="Paused", conditions=[Condition(CONDITION_PAUSED, CONDITION_TRUE)]
    )
    CommonControl(client).ensure_paused(EnsureFuncArgs(pod, box, status))
    assert client.get(Pod, KEY).metadata.name == "test-box-1"


def test_paused_waits_for_deleting_pod(client):
    box = make_box()
    client.create(make_pod(box, finalizers=["example.com/hold"]))
    client.delete(client.get(Pod, KEY))
    pod = client.get(Pod, KEY)
    status = SandboxStatus(phase="Paused")
    CommonControl(client).ensure_paused(EnsureFuncArgs(pod, box, status))
    assert client.get(Pod, KEY).metadata.deletion_timestamp == pod.metadata.deletion_timestamp
    assert get_sandbox_condition(status, CONDITION_PAUSED).status == CONDITION_FALSE


def test_resuming_without_pod_creates_it(client):
    box = make_box()
    client.create(box)
    status = SandboxStatus(phase="Resuming")
    CommonControl(client).ensure_resuming(EnsureFuncArgs(None, box, status))
    assert client.get(Pod, KEY).metadata.owner_references[0].uid == box.metadata.uid
    assert status.phase == "Resuming"


def test_resuming_with_running_pod(client):
    box = make_box()
    status = SandboxStatus(
        phase="Resuming", conditions=[Condition(CONDITION_READY, CONDITION_FALSE)]
    )
    CommonControl(client).ensure_resuming(EnsureFuncArgs(make_pod(box), box, status))
    assert status.phase == "Running"
    assert get_sandbox_condition(status, CONDITION_READY).last_transition_time == OT


def test_terminating_without_pod_removes_finalizer(client):
    box = make_box()
    client.create(box)
    CommonControl(client).ensure_terminating(EnsureFuncArgs(None, box, SandboxStatus()))
    assert client.get(Sandbox, KEY).metadata.finalizers == []


def test_terminating_deletes_pod(client):
    box = make_box()
    pod = make_pod(box)
    client.create(pod)
    CommonControl(client).ensure_terminating(EnsureFuncArgs(pod, box, SandboxStatus()))
    with pytest.raises(NotFoundError):
        client.get(Pod, KEY)