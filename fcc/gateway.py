from __future__ import annotations

import sys
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Callable

import httpx

from .errors import NoHealthyTargets
from .registry import TargetRegistry
from .runtime import FIXED_RESPONSE, FORWARD, FleetMember, RoutingRule, RuntimeState
from .settings import settings

DEFAULT_PRIORITY = sys.maxsize

# Hop-by-hop headers are not forwarded in either direction.
HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
}


@dataclass(frozen=True)
class RouteRequest:
    path: str
    method: str = "GET"
    query: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass(frozen=True)
class RouteResponse:
    status_code: int
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)
    member_id: str | None = None


Forwarder = Callable[[FleetMember, RouteRequest], RouteResponse]


def default_rule(status_code: int = 404, body: str = "Not Found") -> RoutingRule:
    return RoutingRule(priority=DEFAULT_PRIORITY, path="*", action=FIXED_RESPONSE, status_code=status_code, body=body)


def validate_rules(rules: list[RoutingRule]) -> list[RoutingRule]:
    """Return rules sorted by priority, checking the listener invariants.

    Priorities must be unique and exactly one catch-all fixed-response rule
    must exist, evaluated last.
    """
    ordered = sorted(rules, key=lambda r: r.priority)
    priorities = [r.priority for r in ordered]
    if len(set(priorities)) != len(priorities):
        raise ValueError("Routing rule priorities must be unique per listener.")
    defaults = [r for r in ordered if r.is_catch_all and r.action == FIXED_RESPONSE]
    if len(defaults) != 1:
        raise ValueError("Exactly one default (catch-all fixed-response) rule is required.")
    if ordered[-1] is not defaults[0]:
        raise ValueError("The default rule must have the highest priority number.")
    return ordered


def http_forward(member: FleetMember, request: RouteRequest) -> RouteResponse:
    url = f"{member.address}{request.path}"
    if request.query:
        url = f"{url}?{request.query}"
    headers = {k: v for k, v in request.headers.items() if k.lower() not in HOP_HEADERS}
    try:
        with httpx.Client(timeout=settings.gateway_timeout_s, follow_redirects=False) as client:
            resp = client.request(request.method, url, headers=headers, content=request.body)
    except httpx.HTTPError as e:
        return RouteResponse(502, f"Upstream error: {type(e).__name__}".encode(), member_id=member.id)
    out_headers = {k: v for k, v in resp.headers.items() if k.lower() not in HOP_HEADERS}
    return RouteResponse(resp.status_code, resp.content, out_headers, member_id=member.id)


class TrafficRouter:
    """Ordered rule evaluation in front of the registry's healthy members.

    Strategy for forward rules: round-robin over one registry snapshot, so the
    chosen member is always in the healthy set that was read.
    """

    def __init__(
        self,
        registry: TargetRegistry,
        runtime: RuntimeState,
        rules: list[RoutingRule] | None = None,
        forwarder: Forwarder | None = None,
        listener: str = "default",
    ):
        self.registry = registry
        self.runtime = runtime
        self.rules = validate_rules(rules or [RoutingRule(priority=100, path="/*", action=FORWARD), default_rule()])
        self.forwarder = forwarder or http_forward
        self.listener = listener

    def match(self, path: str) -> RoutingRule:
        for rule in self.rules:
            if fnmatchcase(path, rule.path):
                return rule
        # unreachable: the default rule matches everything
        return self.rules[-1]

    def select_target(self) -> FleetMember:
        members = tuple(m for m in self.registry.healthy_members() if not m.draining)
        if not members:
            raise NoHealthyTargets(f"No healthy targets for listener '{self.listener}'.")
        return members[self.runtime.next_index(f"rr:{self.listener}", len(members))]

    def route(self, request: RouteRequest) -> RouteResponse:
        rule = self.match(request.path)
        if rule.action == FIXED_RESPONSE:
            return RouteResponse(rule.status_code, rule.body.encode("utf-8"), {"content-type": "text/plain"})

        member = self._claim_target()
        try:
            return self.forwarder(member, request)
        finally:
            self.runtime.end_request(member.id)

    def _claim_target(self) -> FleetMember:
        """Pick a member and count the request against it.

        The controller marks a member draining before it reads the in-flight
        count, so a member seen draining after the increment is handed back.
        """
        while True:
            member = self.select_target()
            self.runtime.begin_request(member.id)
            if not member.draining:
                return member
            self.runtime.end_request(member.id)

    def routing_table(self) -> list[dict]:
        return [
            {
                "priority": r.priority,
                "path": r.path,
                "action": r.action,
                "status_code": r.status_code if r.action == FIXED_RESPONSE else None,
                "targets": sorted(self.registry.current_healthy_set()) if r.action == FORWARD else [],
            }
            for r in self.rules
        ]
