"""Controller revisions that record a sandbox set's pod template."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping, Optional

from agentsandbox.resources import (
    SANDBOX_SET_KIND,
    ObjectMeta,
    PodTemplate,
    SandboxSet,
    new_controller_ref,
)

CONTROLLER_REVISION_HASH_LABEL = "controller.kubernetes.io/hash"
MAX_PREFIX_LENGTH = 223

_SAFE_ALPHANUMS = "bcdfghjklmnpqrstvwxz2456789"
_FNV32_OFFSET = 2166136261
_FNV32_PRIME = 16777619


@dataclass
class ControllerRevision:
    """An immutable snapshot of a controller's template."""

    kind: ClassVar[str] = "ControllerRevision"
    api_version: ClassVar[str] = "apps/v1"

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    data: bytes = b""
    revision: int = 0


def _encode_json(value: Any) -> bytes:
    """Compact JSON with sorted keys and HTML-safe escapes."""
    text = json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    for char, escape in (
        ("&", "\\u0026"),
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        text = text.replace(char, escape)
    return text.encode("utf-8")


def _template_dict(template: PodTemplate) -> dict[str, Any]:
    metadata: dict[str, Any] = {"creationTimestamp": None}
    if template.labels:
        metadata["labels"] = dict(template.labels)
    if template.annotations:
        metadata["annotations"] = dict(template.annotations)
    return {"metadata": metadata, "spec": json.loads(json.dumps(template.spec))}


def get_patch(sandbox_set: SandboxSet) -> bytes:
    """A patch that replaces a sandbox set's template with its current one."""
    template = _template_dict(sandbox_set.spec.template)
    template["$patch"] = "replace"
    return _encode_json({"spec": {"template": template}})


def _fnv32(data: bytes, value: int = _FNV32_OFFSET) -> int:
    for byte in data:
        value = (value * _FNV32_PRIME) & 0xFFFFFFFF
        value ^= byte
    return value


def safe_encode_string(text: str) -> str:
    """Map every byte onto an alphabet without vowels, avoiding bad words."""
    return "".join(
        _SAFE_ALPHANUMS[byte % len(_SAFE_ALPHANUMS)] for byte in text.encode("utf-8")
    )


def hash_controller_revision(revision: ControllerRevision, probe: Optional[int]) -> str:
    """FNV-32 hash of the revision's data and the optional probe, safely encoded."""
    value = _fnv32(revision.data)
    if probe is not None:
        value = _fnv32(str(probe).encode(), value)
    return safe_encode_string(str(value))


def controller_revision_name(prefix: str, hash_value: str) -> str:
    """prefix-hash, with prefix cut to 223 bytes so the name fits in 253."""
    encoded = prefix.encode("utf-8")
    if len(encoded) > MAX_PREFIX_LENGTH:
        prefix = encoded[:MAX_PREFIX_LENGTH].decode("utf-8", errors="ignore")
    return f"{prefix}-{hash_value}"


def new_controller_revision(
    parent: Any,
    parent_kind: str,
    template_labels: Mapping[str, str],
    data: bytes,
    revision: int,
    collision_count: Optional[int],
) -> ControllerRevision:
    """A revision owned by parent, labelled with its template labels and its hash."""
    cr = ControllerRevision(
        metadata=ObjectMeta(
            labels=dict(template_labels),
            owner_references=[new_controller_ref(parent, parent_kind)],
        ),
        data=data,
        revision=revision,
    )
    hash_value = hash_controller_revision(cr, collision_count)
    cr.metadata.name = controller_revision_name(parent.metadata.name, hash_value)
    cr.metadata.labels[CONTROLLER_REVISION_HASH_LABEL] = hash_value
    return cr


def new_revision(
    sandbox_set: SandboxSet, revision: int, collision_count: Optional[int]
) -> ControllerRevision:
    """A revision holding a patch that reapplies the set's current template."""
    cr = new_controller_revision(
        sandbox_set,
        SANDBOX_SET_KIND,
        sandbox_set.spec.template.labels,
        get_patch(sandbox_set),
        revision,
        collision_count,
    )
    cr.metadata.annotations.update(sandbox_set.metadata.annotations)
    return cr