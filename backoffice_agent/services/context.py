# =============================================================================
# Context Aggregator — Collaborator Modules → Nested Context
# =============================================================================
#
# Resolves data from the back-office collaborator modules (clients,
# invoices, expenses, reports) that an agent has been granted access to,
# and maps it into the context object rendered into the prompt.
#
# FLOW (per turn):
#   1. For every enabled integration, for every granted permission scope:
#      GET {module base url}{scope path} with X-User-ID / X-Agent-Request.
#      All requests run concurrently; each has its own timeout.
#   2. Per integration, the scope payloads form {scope: payload}; each
#      field mapping copies a dotted source path out of it into a dotted
#      target path of the context (intermediate dicts are created).
#   3. A `user` entry describes the caller.
#   4. The turn's ad-hoc context is merged last and wins on collisions.
#
# FAILURE ISOLATION: one failing scope (timeout, HTTP error, unknown
# module or scope, non-JSON body) becomes a CollaboratorFetchFailure that is
# logged and skipped. Context aggregation never fails a turn.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

import httpx

from backoffice_agent.config import settings
from backoffice_agent.errors import CollaboratorFetchFailure
from backoffice_agent.models.agent import AgentProfile, Integration

logger = logging.getLogger(__name__)

SCOPE_PATHS: dict[str, str] = {
    "read_clients": "/clients",
    "read_invoices": "/invoices",
    "read_expenses": "/expenses",
    "read_reports": "/reports",
    "read_analytics": "/analytics",
}


class ContextAggregator:
    """
    Builds the per-turn context from collaborator modules.

    Args:
        endpoints: Module id → base URL (default settings.collaborator_endpoints).
        timeout: Per-request timeout in seconds (default 5s from settings).
        client: Shared httpx.AsyncClient. When omitted, one client is opened
            per build() call.
    """

    def __init__(
        self,
        endpoints: Mapping[str, str] | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._endpoints = dict(
            settings.collaborator_endpoints if endpoints is None else endpoints
        )
        self._timeout = timeout or settings.collaborator_timeout_seconds
        self._client = client

    async def build(
        self,
        agent: AgentProfile,
        user_id: str | None,
        turn_context: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        context: dict[str, Any] = {}
        if user_id:
            context["user"] = user_context(user_id)

        integrations = [i for i in agent.integrations if i.enabled and i.permissions]
        if integrations:
            if self._client is not None:
                payloads = await self._fetch_all(self._client, integrations, user_id)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    payloads = await self._fetch_all(client, integrations, user_id)

            for integration, module_payload in zip(integrations, payloads, strict=True):
                for mapping in integration.data_mapping:
                    value = get_nested_value(module_payload, mapping.source)
                    if value is not None:
                        set_nested_value(context, mapping.target, value)

        if turn_context:
            context.update(turn_context)

        return context

    async def _fetch_all(
        self,
        client: httpx.AsyncClient,
        integrations: list[Integration],
        user_id: str | None,
    ) -> list[dict[str, Any]]:
        return await asyncio.gather(*(
            self._fetch_module(client, integration, user_id)
            for integration in integrations
        ))

    async def _fetch_module(
        self,
        client: httpx.AsyncClient,
        integration: Integration,
        user_id: str | None,
    ) -> dict[str, Any]:
        results = await asyncio.gather(*(
            self._fetch_scope_safely(client, integration.module_id, scope, user_id)
            for scope in integration.permissions
        ))
        return {
            scope: payload
            for scope, payload in zip(integration.permissions, results, strict=True)
            if payload is not None
        }

    async def _fetch_scope_safely(
        self,
        client: httpx.AsyncClient,
        module_id: str,
        scope: str,
        user_id: str | None,
    ) -> Any:
        try:
            return await self.fetch_scope(client, module_id, scope, user_id)
        except CollaboratorFetchFailure as exc:
            logger.warning("Skipping collaborator data: %s", exc)
            return None

    async def fetch_scope(
        self,
        client: httpx.AsyncClient,
        module_id: str,
        scope: str,
        user_id: str | None,
    ) -> Any:
        """
        Fetch one scope's payload from a collaborator module.

        Raises:
            CollaboratorFetchFailure: On any lookup, transport, status or
                decoding error.
        """
        base_url = self._endpoints.get(module_id)
        if base_url is None:
            raise CollaboratorFetchFailure(module_id, scope, "unknown module")
        path = SCOPE_PATHS.get(scope)
        if path is None:
            raise CollaboratorFetchFailure(module_id, scope, "unknown permission scope")

        try:
            response = await client.get(
                f"{base_url.rstrip('/')}{path}",
                headers={
                    "X-User-ID": user_id or "",
                    "X-Agent-Request": "true",
                },
                timeout=self._timeout,
            )
            response.raise_for_status()
            return response.json()
        # InvalidURL (malformed configured endpoint) is not an HTTPError
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise CollaboratorFetchFailure(module_id, scope, str(exc) or repr(exc)) from exc
        except ValueError as exc:
            raise CollaboratorFetchFailure(module_id, scope, f"invalid JSON: {exc}") from exc


def user_context(user_id: str) -> dict[str, Any]:
    """Caller description added to every context."""
    return {
        "id": user_id,
        "timezone": "UTC",
        "locale": "en-US",
        "preferences": {},
    }


def get_nested_value(obj: Any, path: str) -> Any:
    """Read a dotted path; any missing or non-dict step gives None."""
    current = obj
    for key in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
        if current is None:
            return None
    return current


def set_nested_value(obj: dict[str, Any], path: str, value: Any) -> None:
    """Write a dotted path, creating (or replacing non-dict) intermediates."""
    *parents, last = path.split(".")
    target = obj
    for key in parents:
        child = target.get(key)
        if not isinstance(child, dict):
            child = {}
            target[key] = child
        target = child
    target[last] = value
