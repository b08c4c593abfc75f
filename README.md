# goddess

Building blocks for a service gateway. The package parses backend targets and
watches service discovery for instance changes. It picks backends by weight,
sends requests through an `httpx` transport, and loads gateway configuration
that reloads itself when its files change.

## Installation

```
pip install .
```

To run the tests as well:

```
pip install ".[test]"
pytest
```

## Command line

```
goddess
goddess version
goddess version --format json
goddess version --format yaml
```

With no command, `goddess` prints its grouped help. `goddess version` prints
the name, author, e-mail, version, repository, build time and description.
The output is text by default, and JSON or YAML with `--format`. Both take the
global options `-n/--namespace` (default `moon`), `--log-format` (default
`TEXT`) and `--log-level` (default `DEBUG`). The log level sets the level of
the `goddess` logger.

## Library overview

- `goddess.durations.parse_duration` parses strings such as `300ms`, `1.5s` or
  `1h30m` into a `timedelta`. It raises `ValueError` on malformed input.
- `goddess.target`:
  - `parse_target` turns a backend string into a `Target`. A bare address such
    as `127.0.0.1:8000` gets the `direct` scheme. A string such as
    `discovery:///helloworld` keeps its own scheme.
  - `parse_endpoint(endpoints, scheme, is_secure)` returns the host of the first
    endpoint URL that matches the scheme and its `isSecure` query flag, or `""`
    if none does.
  - `is_secure` reads that flag.
- `goddess.registry`:
  - `register(name, factory)` adds a discovery factory.
  - `create(DiscoveryConfig(...))` builds a discovery from a factory.
  - Failures raise `DiscoveryError`. `create(None)` returns `None`.
  - `DiscoveryRegistry` is the same thing as an instance you own.
- `goddess.globals`: `GlobalFlags` holds build metadata and the global options.
  It is read with `get_global_flags` and updated with `set_global_flags`.
- `goddess.commands`: `commands_help` renders `CommandInfo` entries grouped by
  `CommandGroup`.
- `goddess.node`:
  - `Node` and `Protocol` (`HTTP`, `GRPC`) describe a backend.
  - `new_node` attaches the `httpx.Client` that suits the node's protocol and
    TLS settings.
  - `HTTPSClientStore` builds one client for each named TLS configuration.
  - `build_ssl_context` turns `TLSSettings` (PEM text) into an `ssl.SSLContext`.
- `goddess.servicewatch`:
  - `ServiceWatcher` keeps one watch for each discovery endpoint and passes
    every new list of `ServiceInstance` objects to the appliers registered on
    that endpoint.
  - `add_watch` uses a process-wide watcher.
  - `instances_set_hash` gives a CRC32 fingerprint of an instance set.
  - An applier raises `CancelWatch` to stop receiving updates. Canceled
    appliers are removed by `cleanup`.
- `goddess.factory`:
  - `new_factory(discovery)` returns a callable that takes a `BuildContext` and
    an endpoint mapping and returns a `Client`.
  - `Client` is an `httpx` transport. It sends each request to a node that a
    `WeightedPicker` chooses by smooth weighted round-robin.
  - Backends with the `direct` scheme become nodes at once. Backends with the
    `discovery` scheme are watched.
  - `new_build_context` builds the named TLS contexts from a gateway's
    `tlsStore`.
- `goddess.config`:
  - `FileLoader` reads the gateway YAML file into a dictionary.
  - It merges the `endpoints` of every `*.yaml` file in a priority directory.
    An endpoint with the same method and path is replaced; any other endpoint
    is added at the front.
  - Every few seconds it checks whether the files changed and runs the
    handlers registered with `watch`.
- `goddess.ctrl_loader`:
  - `CtrlConfigLoader` fetches the gateway config and priority configs from a
    control service and writes them to disk as YAML.
  - It also fetches feature switches and applies them to a `FeatureRegistry`.
  - After a failed load it moves on to the next control service URL.

`ServiceWatcher`, `FileLoader` and `CtrlConfigLoader` each offer
`debug_handler()`. It returns a WSGI application that reports their state as
JSON.

```python
import httpx

from goddess.config import FileLoader
from goddess.factory import empty_build_context, new_factory

with FileLoader("config.yaml", "canary") as loader:
    gateway = loader.load()
    loader.watch(lambda: print("config changed"))

factory = new_factory(discovery=None)
endpoint = {"protocol": "HTTP", "backends": [{"target": "127.0.0.1:8000"}]}
with httpx.Client(transport=factory(empty_build_context(), endpoint)) as client:
    response = client.get("http://gateway/helloworld/world")
```

## Environment

- `PROXY_DIAL_TIMEOUT`: connect timeout for backend clients, for example
  `500ms`. The default is 200 ms.
- `PROXY_FOLLOW_REDIRECT`: when set, backend clients follow redirects, up to 10.
- `INITIAL_RESOLVE_TIMEOUT`: how long the process-wide watcher waits for the
  first instance list of a new endpoint. If unset, it waits until the list
  arrives.
- `ADVERTISE_ADDR`, `ADVERTISE_DEVICE`: the address `CtrlConfigLoader` reports
  to the control service. If `ADVERTISE_ADDR` is unset, the loader uses the
  IPv4 address of the device named by `ADVERTISE_DEVICE` (default `eth0`).

## What this package does not do

- There is no gateway command and no listening proxy server. Routing of
  incoming requests, middleware (CORS, JWT, logging, tracing, rewriting,
  circuit breaking and the like) and metrics are not included. The pieces
  above have to be wired into a server of your own.
- No discovery backend is registered. Consul, etcd or any other discovery must
  be supplied as a factory through `goddess.registry.register`.
- Configuration is handled as plain dictionaries. It is not checked against a
  schema.