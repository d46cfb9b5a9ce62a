from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import httpx

from crmauth.config import Settings
from crmauth.logging import get_logger
from crmauth.service.errors import IdentityProviderError
from crmauth.service.gotrue import GoTrueIdentityProvider, send_request

logger = get_logger(__name__)

CRM_COLLECTIONS: Sequence[str] = (
    "contacts",
    "deals",
    "tasks",
    "events",
    "communications",
    "staff",
    "payments",
    "campaigns",
)


class CollectionReloader:
    """Bulk reload of the CRM collections from PostgREST after sign-in.

    Collections are fetched concurrently. A collection that fails keeps its
    previous rows and is reported in the ``crm_collection_reload_failed`` event.
    """

    def __init__(
        self,
        settings: Settings,
        provider: GoTrueIdentityProvider,
        *,
        client: Optional[httpx.AsyncClient] = None,
        collections: Sequence[str] = CRM_COLLECTIONS,
    ) -> None:
        self.settings = settings
        self.provider = provider
        self.client = client or provider.client
        self.collection_names = tuple(collections)
        self.collections: Dict[str, List[Dict[str, Any]]] = {
            name: [] for name in self.collection_names
        }

    def _url(self, table: str) -> str:
        return f"{self.settings.identity_url}/rest/v1/{table}"

    async def _fetch(self, table: str) -> List[Dict[str, Any]]:
        resp = await send_request(
            self.client,
            "GET",
            self._url(table),
            headers=self.provider._headers(self.provider.current_access_token()),
            params={"select": "*", "order": "created_at.desc"},
        )
        rows = resp.json()
        if not isinstance(rows, list):
            raise IdentityProviderError(f"Unexpected payload for {table}", code="collection_invalid")
        return rows

    async def fetch_all(self) -> None:
        results = await asyncio.gather(
            *(self._fetch(name) for name in self.collection_names),
            return_exceptions=True,
        )
        failed = []
        for name, result in zip(self.collection_names, results):
            if isinstance(result, IdentityProviderError):
                failed.append(name)
                logger.warning("crm_collection_reload_failed", collection=name, error=result.message)
            elif isinstance(result, BaseException):
                raise result
            else:
                self.collections[name] = result
        logger.info(
            "crm_collections_reloaded",
            loaded=len(self.collection_names) - len(failed),
            failed=len(failed),
        )


class LocalCollectionCache:
    """Reloader used with the in-process identity provider; counts reloads only."""

    def __init__(self, collections: Sequence[str] = CRM_COLLECTIONS) -> None:
        self.collections: Dict[str, List[Dict[str, Any]]] = {name: [] for name in collections}
        self.reloads = 0

    async def fetch_all(self) -> None:
        self.reloads += 1
        logger.debug("crm_collections_reloaded", reloads=self.reloads)
