"""The HTTP proxy service: the phases each proxied request goes through."""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable

from pingsix.discovery import HttpPeer
from pingsix.global_rule import global_plugin_fetch
from pingsix.request import Request
from pingsix.resources import ProxyContext
from pingsix.route import global_route_match_fetch

log = logging.getLogger(__name__)

Responder = Callable[[Request, int], Awaitable[None]]

NOT_FOUND = 404


class HttpService:
    """Matches requests to routes and runs global and route plugins at each phase.

    ``responder`` is awaited with the request and a status code when the
    service answers a request itself.
    """

    def __init__(self, responder: Responder | None = None) -> None:
        self.responder = responder

    def new_ctx(self) -> ProxyContext:
        """A fresh context for one request."""
        return ProxyContext()

    async def early_request_filter(self, request: Request, ctx: ProxyContext) -> None:
        """Match the request to a route, then run the early plugin hooks."""
        found = global_route_match_fetch().match_request(request)
        if found is not None:
            params, route = found
            ctx.route_params = params
            ctx.plugin = route.build_plugin_executor()
            ctx.route = route
            ctx.global_plugin = global_plugin_fetch()
        await ctx.global_plugin.early_request_filter(request, ctx)
        await ctx.plugin.early_request_filter(request, ctx)

    async def request_filter(self, request: Request, ctx: ProxyContext) -> bool:
        """Return True when the request has been answered without proxying."""
        if ctx.route is None:
            ctx.vars["status"] = str(NOT_FOUND)
            if self.responder is not None:
                await self.responder(request, NOT_FOUND)
            return True
        if await ctx.global_plugin.request_filter(request, ctx):
            return True
        return await ctx.plugin.request_filter(request, ctx)

    async def upstream_peer(self, request: Request, ctx: ProxyContext) -> HttpPeer:
        """Peer for the matched route; raises LookupError if there is none."""
        if ctx.route is None:
            raise LookupError("no route matched the request")
        peer = ctx.route.select_http_peer(request)
        ctx.vars["upstream"] = peer.address
        return peer

    async def upstream_request_filter(
        self, request: Request, upstream_request: Request, ctx: ProxyContext
    ) -> None:
        """Run plugins on the outgoing request, then rewrite its Host if configured."""
        await ctx.global_plugin.upstream_request_filter(request, upstream_request, ctx)
        await ctx.plugin.upstream_request_filter(request, upstream_request, ctx)
        if ctx.route is not None:
            upstream = ctx.route.resolve_upstream()
            if upstream is not None:
                upstream.upstream_host_rewrite(upstream_request)

    async def response_filter(
        self, request: Request, upstream_response: Any, ctx: ProxyContext
    ) -> None:
        await ctx.global_plugin.response_filter(request, upstream_response, ctx)
        await ctx.plugin.response_filter(request, upstream_response, ctx)

    def response_body_filter(
        self, request: Request, body: bytes | None, end_of_stream: bool, ctx: ProxyContext
    ) -> bytes | None:
        """The body chunk after global and route plugins have processed it."""
        body = ctx.global_plugin.response_body_filter(request, body, end_of_stream, ctx)
        return ctx.plugin.response_body_filter(request, body, end_of_stream, ctx)

    async def logging(
        self, request: Request, error: BaseException | None, ctx: ProxyContext
    ) -> None:
        await ctx.global_plugin.logging(request, error, ctx)
        await ctx.plugin.logging(request, error, ctx)

    def fail_to_connect(
        self, peer: HttpPeer, ctx: ProxyContext, error: BaseException
    ) -> BaseException:
        """Mark the connection error retryable (``error.retry``) while retries remain."""
        route = ctx.route
        if route is None:
            return error
        upstream = route.resolve_upstream()
        if upstream is None:
            return error
        retries = upstream.retries
        timeout = upstream.retry_timeout
        if retries is None or retries <= 0 or ctx.tries >= retries or timeout is None:
            return error
        if time.monotonic() - ctx.request_start <= timeout:
            ctx.tries += 1
            error.retry = True  # type: ignore[attr-defined]
            log.debug("Retrying connection to %s (attempt %d)", peer.address, ctx.tries)
        return error