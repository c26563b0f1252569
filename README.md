# agentsandbox

Building blocks for running pools of isolated sandboxes for agents:

- a **routing proxy** that decides where each incoming HTTP request goes
  (a sandbox or the API entry), and keeps its routing table in step with
  peer proxies;
- a **Sandbox reconciler** that drives one sandbox through its life
  (pending, running, paused, resuming, terminating) by creating and
  deleting its pod;
- a **SandboxSet reconciler** that keeps a warm pool of ready sandboxes at
  the requested size, hands claimed sandboxes over to their users, and
  clears away failed ones.

The package has no dependencies outside the standard library.

## The routing proxy

`agentsandbox.proxy.server.Server` answers external-processing requests
that carry request headers. You supply a `RequestAdapter`
(`agentsandbox.proxy.routes`) that knows how your requests name sandboxes:

- `is_sandbox_request(authority, path, port)` says whether a request is
  meant for a sandbox at all; other requests are sent to `entry()`.
- `map(scheme, authority, path, port, headers)` returns the sandbox id,
  the port inside the sandbox, any extra headers and the calling user,
  and raises when the request cannot be mapped.
- `authorize(user, owner)` decides whether that user may reach the sandbox.

Routes (`agentsandbox.proxy.routes.Route`, with `to_json` and `from_json`)
are kept by the server with `set_route`, `load_route`, `list_routes` and
`delete_route`. For each sandbox request `handle_request_headers` answers
with one of:

- a header mutation that sets `x-envoy-original-dst-host` to
  `<route ip>:<sandbox port>`, plus the adapter's and the route's extra
  headers and any headers given as a JSON object in
  `request-header-modifier`;
- status 500 when the request cannot be mapped;
- status 404 when no route exists for the sandbox;
- status 403 when the sandbox's route is in state `paused`;
- status 401 when the user may not reach the sandbox.

`Server.process(stream)` runs the loop over a `ProcessStream` you supply
(`recv`, `send`, `cancelled`): it returns when `recv` gives `None` or
raises `StreamCancelled`, raises `StreamError` on other receive failures,
and lets send failures propagate. The pure helpers in
`agentsandbox.proxy.messages` (`parse_request`, `header_modifiers`,
`destination_response`, `error_response`) can be used on their own.

Peers keep each other's routes current: `set_peer`, `list_peers`,
`hello_peer`, `sync_route_with_peers` (raises `ConnectionError` listing
every peer that could not be reached), and `check_peers`, which forgets
peers whose last greeting is more than five heartbeat intervals old and
greets the rest.

`Server.run()` starts the system HTTP API on port 7789 (the
`system_port` attribute) — `GET /hello` records the caller as a peer and
`POST /refresh` stores the route in the body, both answering 204, or 400
with a JSON message — together with a heartbeat thread, and blocks until
`stop()` is called. `stop()` may be called more than once.

```python
from agentsandbox.proxy.routes import RequestAdapter, Route
from agentsandbox.proxy.server import Server


class ByHostAdapter(RequestAdapter):
    def is_sandbox_request(self, authority, path, port):
        return authority.endswith(".sandbox.example.com")

    def map(self, scheme, authority, path, port, headers):
        sandbox_id = authority.split(".", 1)[0]
        return sandbox_id, 8080, {}, headers.get("x-user", "")

    def authorize(self, user, owner):
        return user == owner

    def entry(self):
        return "127.0.0.1:8080"


server = Server(ByHostAdapter())
server.set_route(Route(id="box1", ip="10.0.0.5", owner="alice", state="running"))
```

## Sandboxes and pools

`agentsandbox.resources` holds the resource types (`Sandbox`, `SandboxSet`,
`Pod` and their parts, `SandboxPhase`) and the helpers
`get_sandbox_condition`, `set_sandbox_condition`,
`remove_sandbox_condition`, `get_pod_condition`, `new_controller_ref` and
`get_controller_of`. `agentsandbox.cluster` provides `InMemoryClient`, an
object store with `get`, `list`, `create`, `update`, `update_status`,
`patch_labels`, `patch_status` and `delete` that checks resource versions
(`ConflictError`) and keeps deleted objects while they have finalizers;
`EventRecorder` for events (`eventf`, `drain`); `ObjectKey` to address an
object by namespace and name; `update_finalizer`; and `setup_controllers`.

`agentsandbox.sandbox_controller.SandboxReconciler` brings a single
sandbox and its pod into line, using the phase handlers of `CommonControl`
from `agentsandbox.sandbox_control`. `SandboxPodEventHandler` queues the
sandbox behind every pod the sandbox controller created.

`agentsandbox.sandboxset_controller.SandboxSetReconciler` manages a pool.
Each `reconcile(key)`:

1. releases sandboxes that have been claimed (running or paused) from the
   pool by removing its owner reference;
2. labels ready new sandboxes as available;
3. creates sandboxes when the pool is short, or marks creating and then
   available ones as killing when it is too large (not within five
   seconds of growing, and never ones locked by another owner); scaling
   waits until the sandboxes it created have been seen;
4. deletes failed, finished and killed sandboxes;
5. writes the pool's status: replicas, available replicas, update
   revision, observed generation and selector.

When any step fails it raises `ReconcileError`, which carries every error
and the `ReconcileResult`.

Sandboxes are sorted into groups by `agentsandbox.grouping.find_sandbox_group`;
`ScaleExpectations` tracks the creations still to be observed, and
`SandboxEventHandler` queues the owning pool on sandbox events. New
sandboxes carry the pool's template revision hash, computed by
`agentsandbox.revision`.

```python
from agentsandbox.cluster import EventRecorder, InMemoryClient, ObjectKey
from agentsandbox.grouping import ScaleExpectations
from agentsandbox.resources import ObjectMeta, SandboxSet, SandboxSetSpec
from agentsandbox.sandboxset_controller import SandboxSetReconciler

client = InMemoryClient()
recorder = EventRecorder()
reconciler = SandboxSetReconciler(client, recorder, ScaleExpectations())

pool = SandboxSet(
    metadata=ObjectMeta(name="pool", namespace="default"),
    spec=SandboxSetSpec(replicas=2),
)
client.create(pool)
reconciler.reconcile(ObjectKey.of(pool))
for event in recorder.drain():
    print(event)
```

## What the package does not do

- It has no network listener for the external-processing stream itself:
  `Server.process` works on any `ProcessStream` object you provide.
- It does not talk to a real cluster or store anything on disk; objects
  live in `InMemoryClient` for the life of the process, and nothing
  watches it and calls the event handlers or reconcilers for you.
- It has no command-line entry point.

## Running the tests

Install the `test` extra and run `pytest` from the project directory.