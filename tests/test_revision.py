import json

import pytest

from agentsandbox.resources import (
    GROUP_VERSION,
    SANDBOX_SET_KIND,
    ObjectMeta,
    PodTemplate,
    SandboxSet,
    SandboxSetSpec,
)
from agentsandbox.revision import (
    CONTROLLER_REVISION_HASH_LABEL,
    ControllerRevision,
    controller_revision_name,
    get_patch,
    hash_controller_revision,
    new_controller_revision,
    new_revision,
    safe_encode_string,
)

ALPHABET = set("bcdfghjklmnpqrstvwxz2456789")


def make_set(labels=None, annotations=None):
    return SandboxSet(
        metadata=ObjectMeta(
            name="test",
            namespace="default",
            uid="123456789",
            annotations=dict(annotations or {}),
        ),
        spec=SandboxSetSpec(
            replicas=2,
            template=PodTemplate(
                labels=dict(labels if labels is not None else {"is-new-pod": "true"}),
                spec={"containers": [{"name": "test", "image": "test"}]},
            ),
        ),
    )


def test_hash_of_empty_data_is_fnv_offset_basis():
    assert hash_controller_revision(ControllerRevision(), None) == safe_encode_string(
        "2166136261"
    )


@pytest.mark.parametrize("text", ["0", "123456789", "hello world", ""])
def test_safe_encode_string_uses_safe_alphabet(text):
    encoded = safe_encode_string(text)
    assert len(encoded) == len(text)
    assert set(encoded) <= ALPHABET
    assert safe_encode_string(text) == encoded


def test_safe_encode_string_distinguishes_digits():
    assert safe_encode_string("0") != safe_encode_string("1")
    assert len(safe_encode_string("01")) == 2


def test_probe_changes_hash():
    revision = ControllerRevision(data=b'{"spec":{}}')
    plain = hash_controller_revision(revision, None)
    probed = hash_controller_revision(revision, 0)
    assert set(plain) <= ALPHABET and set(probed) <= ALPHABET
    assert plain != probed
    assert hash_controller_revision(revision, 0) == probed


def test_controller_revision_name_joins_prefix_and_hash():
    assert controller_revision_name("abc", "xyz") == "abc-xyz"


def test_controller_revision_name_truncates_long_prefix():
    name = controller_revision_name("a" * 300, "xyz")
    assert name == "a" * 223 + "-xyz"


def test_get_patch_replaces_template():
    patch = json.loads(get_patch(make_set()))
    assert list(patch) == ["spec"]
    template = patch["spec"]["template"]
    assert template["$patch"] == "replace"
    assert template["metadata"]["labels"] == {"is-new-pod": "true"}
    assert template["spec"] == {"containers": [{"name": "test", "image": "test"}]}


def test_get_patch_is_deterministic():
    first = get_patch(make_set())
    second = get_patch(make_set())
    decoded = json.loads(first)
    assert decoded["spec"]["template"]["$patch"] == "replace"
    assert decoded["spec"]["template"]["metadata"]["labels"] == {"is-new-pod": "true"}
    assert first == second


def test_new_controller_revision_labels_and_owner():
    sbs = make_set()
    labels = {"a": "b"}
    cr = new_controller_revision(sbs, SANDBOX_SET_KIND, labels, b"data", 3, None)
    hash_value = cr.metadata.labels[CONTROLLER_REVISION_HASH_LABEL]
    assert cr.metadata.name == f"test-{hash_value}"
    assert cr.metadata.labels["a"] == "b"
    assert labels == {"a": "b"}
    assert cr.revision == 3
    assert cr.data == b"data"
    (ref,) = cr.metadata.owner_references
    assert (ref.kind, ref.name, ref.uid, ref.controller) == (
        SANDBOX_SET_KIND,
        "test",
        "123456789",
        True,
    )
    assert ref.api_version == GROUP_VERSION


def test_new_revision_copies_annotations_and_patch():
    sbs = make_set(annotations={"note": "x"})
    cr = new_revision(sbs, 0, None)
    assert cr.data == get_patch(sbs)
    assert cr.metadata.annotations == {"note": "x"}
    assert cr.metadata.name.endswith(cr.metadata.labels[CONTROLLER_REVISION_HASH_LABEL])


def test_revision_hash_follows_template():
    first = new_revision(make_set(), 0, None)
    same = new_revision(make_set(), 0, None)
    other = new_revision(make_set(labels={"is-new-pod": "false"}), 0, None)
    key = CONTROLLER_REVISION_HASH_LABEL
    assert first.metadata.labels[key] == same.metadata.labels[key]
    assert first.metadata.labels[key] != other.metadata.labels[key]
    assert first.metadata.name.startswith("test-")