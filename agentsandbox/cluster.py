"""An in-memory object store, event recorder and controller registration."""

from __future__ import annotations

import copy
import random
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

_NAME_CHARS = "bcdfghjklmnpqrstvwxz2456789"
_GENERATED_SUFFIX_LENGTH = 5
_FINALIZER_RETRIES = 5


class NotFoundError(LookupError):
    """The requested object does not exist."""


class ConflictError(Exception):
    """The object was modified since it was read."""


class AlreadyExistsError(Exception):
    """An object with the same name already exists."""


@dataclass(frozen=True)
class ObjectKey:
    """Namespace and name of an object."""

    namespace: str = ""
    name: str = ""

    @classmethod
    def of(cls, obj: Any) -> "ObjectKey":
        meta = getattr(obj, "metadata", obj)
        return cls(meta.namespace, meta.name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class Event:
    """A recorded event about an object."""

    object_key: ObjectKey
    kind: str
    event_type: str
    reason: str
    message: str

    def __str__(self) -> str:
        return f"{self.event_type} {self.reason} {self.message}"


class EventRecorder:
    """Collects events in the order they were recorded."""

    def __init__(self) -> None:
        self._events: list[Event] = []
        self._lock = threading.Lock()

    def eventf(self, obj: Any, event_type: str, reason: str, message: str, *args: Any) -> Event:
        text = message % args if args else message
        event = Event(ObjectKey.of(obj), getattr(obj, "kind", ""), event_type, reason, text)
        with self._lock:
            self._events.append(event)
        return event

    def drain(self) -> list[Event]:
        """Return every recorded event and forget them."""
        with self._lock:
            events, self._events = self._events, []
        return events


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryClient:
    """A thread-safe object store with the semantics controllers rely on.

    Objects are copied on the way in and out; writes check resource versions;
    deleting an object with finalizers only marks it for deletion.
    """

    def __init__(self) -> None:
        self._objects: dict[tuple[str, str, str], Any] = {}
        self._lock = threading.RLock()
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    @staticmethod
    def _key_of(obj: Any) -> tuple[str, str, str]:
        return (obj.kind, obj.metadata.namespace, obj.metadata.name)

    def _stored(self, obj: Any, check_version: bool) -> Any:
        stored = self._objects.get(self._key_of(obj))
        if stored is None:
            raise NotFoundError(f"{obj.kind} {ObjectKey.of(obj)} not found")
        version = obj.metadata.resource_version
        if check_version and version and version != stored.metadata.resource_version:
            raise ConflictError(
                f"{obj.kind} {ObjectKey.of(obj)} has been modified; please retry"
            )
        return stored

    def _commit(self, new: Any) -> None:
        key = self._key_of(new)
        if new.metadata.deletion_timestamp is not None and not new.metadata.finalizers:
            self._objects.pop(key, None)
        else:
            self._objects[key] = new

    def get(self, kind: type, key: ObjectKey) -> Any:
        with self._lock:
            stored = self._objects.get((kind.kind, key.namespace, key.name))
            if stored is None:
                raise NotFoundError(f"{kind.kind} {key} not found")
            return copy.deepcopy(stored)

    def list(
        self, kind: type, namespace: Optional[str] = None, owner_uid: Optional[str] = None
    ) -> list[Any]:
        with self._lock:
            found = [
                copy.deepcopy(obj)
                for (obj_kind, obj_ns, _), obj in self._objects.items()
                if obj_kind == kind.kind
                and (namespace is None or obj_ns == namespace)
                and (
                    owner_uid is None
                    or any(ref.uid == owner_uid for ref in obj.metadata.owner_references)
                )
            ]
        return sorted(found, key=lambda o: (o.metadata.namespace, o.metadata.name))

    def create(self, obj: Any) -> None:
        meta = obj.metadata
        with self._lock:
            if not meta.name:
                if not meta.generate_name:
                    raise ValueError("name or generate_name is required")
                while True:
                    suffix = "".join(random.choices(_NAME_CHARS, k=_GENERATED_SUFFIX_LENGTH))
                    candidate = meta.generate_name + suffix
                    if (obj.kind, meta.namespace, candidate) not in self._objects:
                        meta.name = candidate
                        break
            if self._key_of(obj) in self._objects:
                raise AlreadyExistsError(f"{obj.kind} {ObjectKey.of(obj)} already exists")
            meta.uid = meta.uid or str(uuid.uuid4())
            meta.creation_timestamp = _now()
            meta.generation = 1
            meta.resource_version = self._next_version()
            self._objects[self._key_of(obj)] = copy.deepcopy(obj)

    def update(self, obj: Any) -> None:
        """Write metadata and spec; the stored status is kept."""
        with self._lock:
            stored = self._stored(obj, check_version=True)
            new = copy.deepcopy(obj)
            new.status = copy.deepcopy(stored.status)
            new.metadata.uid = stored.metadata.uid
            new.metadata.creation_timestamp = stored.metadata.creation_timestamp
            new.metadata.deletion_timestamp = stored.metadata.deletion_timestamp
            new.metadata.generation = stored.metadata.generation + (
                1 if new.spec != stored.spec else 0
            )
            new.metadata.resource_version = self._next_version()
            self._commit(new)
            obj.metadata = copy.deepcopy(new.metadata)

    def update_status(self, obj: Any) -> None:
        """Write only the status."""
        with self._lock:
            stored = self._stored(obj, check_version=True)
            new = copy.deepcopy(stored)
            new.status = copy.deepcopy(obj.status)
            new.metadata.resource_version = self._next_version()
            self._objects[self._key_of(new)] = new
            obj.metadata.resource_version = new.metadata.resource_version

    def patch_labels(self, obj: Any, labels: dict[str, str]) -> None:
        """Merge labels into the stored object."""
        with self._lock:
            new = copy.deepcopy(self._stored(obj, check_version=False))
            new.metadata.labels.update(labels)
            new.metadata.resource_version = self._next_version()
            self._objects[self._key_of(new)] = new
            obj.metadata = copy.deepcopy(new.metadata)

    def patch_status(self, obj: Any, status: Any) -> None:
        """Replace the stored status."""
        with self._lock:
            new = copy.deepcopy(self._stored(obj, check_version=False))
            new.status = copy.deepcopy(status)
            new.metadata.resource_version = self._next_version()
            self._objects[self._key_of(new)] = new
            obj.metadata = copy.deepcopy(new.metadata)
            obj.status = copy.deepcopy(status)

    def delete(self, obj: Any) -> None:
        """Remove the object, or mark it for deletion while finalizers remain."""
        with self._lock:
            stored = self._stored(obj, check_version=False)
            if not stored.metadata.finalizers:
                del self._objects[self._key_of(stored)]
                return
            if stored.metadata.deletion_timestamp is None:
                new = copy.deepcopy(stored)
                new.metadata.deletion_timestamp = _now()
                new.metadata.resource_version = self._next_version()
                self._objects[self._key_of(new)] = new
                stored = new
            obj.metadata.deletion_timestamp = stored.metadata.deletion_timestamp
            obj.metadata.resource_version = stored.metadata.resource_version


def update_finalizer(client: InMemoryClient, obj: Any, add: bool, finalizer: str) -> None:
    """Add or remove a finalizer on the latest copy of obj, retrying on conflict."""
    for _ in range(_FINALIZER_RETRIES):
        latest = client.get(type(obj), ObjectKey.of(obj))
        present = finalizer in latest.metadata.finalizers
        if add == present:
            obj.metadata.finalizers = list(latest.metadata.finalizers)
            return
        if add:
            latest.metadata.finalizers.append(finalizer)
        else:
            latest.metadata.finalizers = [
                f for f in latest.metadata.finalizers if f != finalizer
            ]
        try:
            client.update(latest)
        except ConflictError:
            continue
        obj.metadata = copy.deepcopy(latest.metadata)
        return
    raise ConflictError(f"failed to update finalizer of {ObjectKey.of(obj)}")


def setup_controllers(
    client: InMemoryClient, controllers: Iterable[Callable[[InMemoryClient], Any]]
) -> list[Any]:
    """Start every controller with the client; the first failure propagates."""
    return [add(client) for add in controllers]