"""Clients for the remote compliance authority.

The authority is the source of truth for persisted privacy state. The engine
pushes every mutation here before applying it locally and pulls snapshots on
demand. Three implementations share one interface:

  - HttpComplianceAuthority: JSON over HTTP with httpx.
  - SupabaseComplianceAuthority: rows upserted into Supabase tables.
  - InMemoryComplianceAuthority: in-process stand-in for local runs and tests.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
import logging
from typing import Any, Dict, List, Optional

import httpx

from privacy.errors import AuthorityRejectedError, RemoteAuthorityError
from privacy.models import AuthoritySnapshot, MutationKind, SyncMutation, utc_now

logger = logging.getLogger(__name__)

# Status codes worth retrying; every other 4xx is a refusal.
_RETRYABLE_STATUS = {408, 425, 429}


class ComplianceAuthority:
    """Interface for the remote authority."""

    async def push(self, mutation: SyncMutation) -> Dict[str, Any]:
        raise NotImplementedError

    async def fetch_snapshot(self, user_id: str) -> AuthoritySnapshot:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class HttpComplianceAuthority(ComplianceAuthority):
    """HTTP client for the authority's mutation and snapshot endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def push(self, mutation: SyncMutation) -> Dict[str, Any]:
        return await self._request("POST", "/v1/mutations", json=mutation.to_dict())

    async def fetch_snapshot(self, user_id: str) -> AuthoritySnapshot:
        payload = await self._request("GET", f"/v1/users/{user_id}/snapshot")
        payload.setdefault("user_id", user_id)
        try:
            return AuthoritySnapshot.from_dict(payload)
        except (KeyError, ValueError, TypeError) as exc:
            raise RemoteAuthorityError(f"Authority returned a malformed snapshot for {user_id}: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.RequestError as exc:
            raise RemoteAuthorityError(f"Compliance authority request failed: {exc}") from exc

        payload: Dict[str, Any]
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {"data": payload}

        if response.status_code >= 500 or response.status_code in _RETRYABLE_STATUS:
            raise RemoteAuthorityError(
                f"Compliance authority unavailable ({response.status_code}): "
                f"{payload.get('detail') or response.text}"
            )
        if response.status_code >= 400:
            raise AuthorityRejectedError(
                f"Compliance authority rejected {method} {path} ({response.status_code}): "
                f"{payload.get('detail') or response.text}"
            )
        return payload


class SupabaseComplianceAuthority(ComplianceAuthority):
    """Stores each entity as a row ``{id, user_id, payload, updated_at}`` in Supabase.

    supabase-py is synchronous, so calls run in a worker thread.
    """

    TABLES = {
        MutationKind.CONSENT_RECORD: "consent_records",
        MutationKind.RIGHTS_REQUEST: "rights_requests",
        MutationKind.AGE_VERIFICATION: "age_verifications",
        MutationKind.PARENTAL_CONSENT: "parental_consent_requests",
    }

    def __init__(self, client: Any) -> None:
        self._client = client

    @classmethod
    def from_credentials(cls, url: str, key: str) -> "SupabaseComplianceAuthority":
        from supabase import create_client

        return cls(create_client(url, key))

    async def push(self, mutation: SyncMutation) -> Dict[str, Any]:
        row = {
            "id": mutation.entity_id,
            "user_id": mutation.user_id,
            "payload": mutation.payload,
            "mutation_id": mutation.id,
            "updated_at": mutation.created_at.isoformat(),
        }
        table = self.TABLES[mutation.kind]
        try:
            result = await asyncio.to_thread(
                lambda: self._client.table(table).upsert(row, on_conflict="id").execute()
            )
        except Exception as exc:
            raise RemoteAuthorityError(f"Supabase write to {table} failed: {exc}") from exc
        data = getattr(result, "data", None)
        return {"status": "acknowledged", "data": data}

    async def fetch_snapshot(self, user_id: str) -> AuthoritySnapshot:
        rows: Dict[MutationKind, List[Dict[str, Any]]] = {}
        for kind, table in self.TABLES.items():
            try:
                result = await asyncio.to_thread(
                    lambda table=table: self._client.table(table).select("*").eq("user_id", user_id).execute()
                )
            except Exception as exc:
                raise RemoteAuthorityError(f"Supabase read from {table} failed: {exc}") from exc
            rows[kind] = [row.get("payload") or {} for row in (getattr(result, "data", None) or [])]

        verifications = rows[MutationKind.AGE_VERIFICATION]
        return AuthoritySnapshot.from_dict(
            {
                "user_id": user_id,
                "consents": rows[MutationKind.CONSENT_RECORD],
                "rights_requests": rows[MutationKind.RIGHTS_REQUEST],
                "age_verification": verifications[-1] if verifications else None,
                "parental_requests": rows[MutationKind.PARENTAL_CONSENT],
            }
        )


class InMemoryComplianceAuthority(ComplianceAuthority):
    """Acknowledges every mutation and keeps the latest payload per entity."""

    def __init__(self) -> None:
        self.mutations: List[SyncMutation] = []
        self._entities: Dict[str, Dict[MutationKind, Dict[str, Dict[str, Any]]]] = defaultdict(
            lambda: defaultdict(dict)
        )

    async def push(self, mutation: SyncMutation) -> Dict[str, Any]:
        self.mutations.append(mutation)
        self._entities[mutation.user_id][mutation.kind][mutation.entity_id] = mutation.payload
        return {"status": "acknowledged", "mutation_id": mutation.id, "received_at": utc_now().isoformat()}

    async def fetch_snapshot(self, user_id: str) -> AuthoritySnapshot:
        entities = self._entities.get(user_id, {})
        verifications = list(entities.get(MutationKind.AGE_VERIFICATION, {}).values())
        return AuthoritySnapshot.from_dict(
            {
                "user_id": user_id,
                "consents": list(entities.get(MutationKind.CONSENT_RECORD, {}).values()),
                "rights_requests": list(entities.get(MutationKind.RIGHTS_REQUEST, {}).values()),
                "age_verification": verifications[-1] if verifications else None,
                "parental_requests": list(entities.get(MutationKind.PARENTAL_CONSENT, {}).values()),
            }
        )
