# pingsix

The core of an HTTP API gateway, written as a library. For each request it
decides which route handles it and which plugins run on it. It also picks the
upstream backend that receives the request and the TLS certificate to serve
for an SNI name. You can load the configuration once at start-up, or keep it
current at runtime by applying key/value change events.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `pingsix.models`: the configuration models `Upstream`, `Route`, `Service`,
  `GlobalRule` and `SSL`, plus their nested settings (`Timeout`, `HealthCheck`,
  `ActiveHealthCheck`, `HealthyCheck`, `UnhealthyCheck`) and enums
  (`UpstreamScheme`, `UpstreamPassHost`, `HashOn`, `SelectionType`,
  `ActiveCheckType`).
  - Each model is built from a plain dict with `from_dict`.
  - `from_dict` raises `ValueError` on malformed input.
  - A route must have `uri` or `uris`.
- `pingsix.request`: the `Request` model, holding the method, URI, headers and
  connection addresses, with helpers that read values from it:
  - `get_query_value`
  - `remove_query_from_header`
  - `get_req_header_value`
  - `get_cookie_value`
  - `get_request_host`
  - `get_client_ip`, which tries `X-Forwarded-For`, then `X-Real-IP`, then the
    client address
  - `request_selector_key`, which builds the load-balancing key from
    variables, a header or a cookie
- `pingsix.resources`: the plugin interface and shared pieces:
  - `ProxyPlugin`, the base class with async hooks. `response_body_filter` is
    the one synchronous hook.
  - `register_plugin` and `build_plugin`. Building an unknown plugin raises
    `PluginError`.
  - `ProxyPluginExecutor`, which runs a list of plugins one after another.
  - `ProxyContext`, the per-request state.
  - `ResourceMap`, a thread-safe map keyed by resource id.
- `pingsix.router`: `Router` maps path patterns to values. Patterns can be
  static, like `/health`; take a parameter, like `/users/{id}`; or end in a
  catch-all, like `/static/{*rest}`. Where two patterns could match the same
  path, static text wins over a parameter, and a parameter wins over a
  catch-all. A malformed or conflicting pattern raises `InsertError`.
- `pingsix.discovery`: `parse_host_and_port` reads node addresses such as
  `example.com:80` or `[::1]:8080`. `HybridDiscovery.from_upstream` turns IP
  nodes into static `Backend`s, each carrying an `HttpPeer`. Domain nodes are
  resolved through DNS by `DnsDiscovery`.
- `pingsix.upstream`: `ProxyUpstream.from_config` builds a `LoadBalancer` and
  starts discovery and optional health checks in a background thread.
  - Selection uses `RoundRobin`, `RandomSelection`, `FnvHash` or
    `KetamaHashing`.
  - Health checks use `TcpHealthCheck` or `HttpHealthCheck`, built from the
    upstream's `checks` section by `build_health_check`.
  - `select_backend` picks a backend for a request.
  - `upstream_host_rewrite` sets the `Host` header when `pass_host` is
    `rewrite`.
- `pingsix.service`: `ProxyService`, which holds an upstream and plugins that
  routes can share.
- `pingsix.global_rule`: `ProxyGlobalRule` holds plugins that run on every
  matched request. `reload_global_plugin` keeps one plugin per name, with the
  last one seen winning, and orders them by priority, highest first.
- `pingsix.route`: `ProxyRoute` and `RouteMatcher`.
  - Matching tries the request's host first, then falls back to routes
    without hosts.
  - Within a host, matching goes by path pattern and then by method.
  - When several routes share a pattern, the one with the higher `priority`
    is tried first.
  - `build_plugin_executor` merges route and service plugins. A route plugin
    wins over a service plugin of the same name.
- `pingsix.gateway`: `HttpService` runs the stages of a proxied request.
  - The stages are `early_request_filter`, `request_filter`, `upstream_peer`,
    `upstream_request_filter`, `response_filter`, `response_body_filter` and
    `logging`.
  - When no route matches, `request_filter` awaits the optional `responder`
    with status 404 and returns `True`.
  - `fail_to_connect` sets `error.retry = True` while the upstream's
    `retries` and `retry_timeout` allow another attempt.
- `pingsix.ssl`: `ProxySSL` parses a PEM certificate and key. `SslMatcher`
  looks an entry up by SNI. `DynamicCert.from_files` loads a default
  certificate, and `DynamicCert.select(server_name)` returns the matching
  entry or the default.
- `pingsix.event`: `ProxyEventHandler` keeps the registries up to date.
  - `handle_event` applies PUT and DELETE `Event`s for keys of the form
    `/prefix/<type>/<id>`, where `<type>` is `routes`, `upstreams`,
    `services`, `global_rules` or `ssls`.
  - `handle_list_response` replaces every registry from a full listing of
    `KeyValue`s.
  - `parse_key` splits such a key into `(id, type)`.

## Example

```python
import asyncio

from pingsix.gateway import HttpService
from pingsix.models import Route, Upstream
from pingsix.request import Request
from pingsix.resources import ProxyPlugin, register_plugin
from pingsix.route import load_static_routes
from pingsix.upstream import load_static_upstreams


class AddHeader(ProxyPlugin):
    name = "add-header"
    priority = 10

    def __init__(self, value):
        self.value = value

    async def upstream_request_filter(self, request, upstream_request, ctx):
        upstream_request.headers["x-gateway"] = self.value


register_plugin("add-header", lambda conf: AddHeader(conf["value"]))

load_static_upstreams(
    [Upstream.from_dict({"id": "web", "nodes": {"127.0.0.1:8080": 1}})],
    False,
)
load_static_routes(
    [
        Route.from_dict(
            {
                "id": "r1",
                "uri": "/users/{id}",
                "upstream_id": "web",
                "plugins": {"add-header": {"value": "pingsix"}},
            }
        )
    ],
    False,
)


async def main():
    service = HttpService()
    request = Request(method="GET", uri="/users/42", headers={"Host": "example.com"})
    ctx = service.new_ctx()
    await service.early_request_filter(request, ctx)
    print(ctx.route_params)  # {'id': '42'}
    if not await service.request_filter(request, ctx):
        peer = await service.upstream_peer(request, ctx)
        print(peer.address)  # 127.0.0.1:8080


asyncio.run(main())
```

Runtime updates use the same registries:

```python
import json

from pingsix.event import Event, EventType, KeyValue, ProxyEventHandler

handler = ProxyEventHandler()
handler.handle_event(
    Event(
        EventType.PUT,
        KeyValue(b"/gateway/routes/r2", json.dumps({"uri": "/health", "upstream_id": "web"}).encode()),
    )
)
handler.handle_event(Event(EventType.DELETE, KeyValue(b"/gateway/routes/r2")))
```

## What this package does not do

- It contains no HTTP server and no TLS listener. It does not accept
  connections or forward bytes. Instead, your server calls `HttpService`'s
  stages for each request, connects to the returned `HttpPeer`, and serves
  the certificate that `DynamicCert.select` returns.
- It does not read configuration files. You build models from dicts yourself,
  with `from_dict`.
- It does not connect to a key/value store or watch one. You pass the events
  and listings to `ProxyEventHandler` yourself.
- It ships no plugins. Every plugin must be registered with
  `register_plugin` before a configuration that names it is loaded.
- It provides no command-line program.