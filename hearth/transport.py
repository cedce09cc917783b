"""HTTP transport for the populate and sync endpoints.

Populate:
    GET <populate_url>?storeNames=A&storeNames=B
    -> {"A": [record, ...], "B": [...]}

Sync:
    POST <sync_url>?lastChangeAt=<iso timestamp>
    body [{"createdAt", "storeName", "primaryKey", "data"}, ...]
    -> [{"createdAt", "storeName", "data"}, ...]

Before each request the ``authentication`` callable is asked for a token; a
token is sent as ``Authorization: Bearer <token>``.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from hearth.models import PopulateResponse, RemoteChange, SyncBatchItem, SyncResponse
from hearth.protocols import TransportError
from hearth.types import format_timestamp

logger = logging.getLogger(__name__)


class HttpTransport:
    """Talks to the remote populate and sync endpoints over httpx.

    Args:
        populate_url: Absolute URL of the populate endpoint
        sync_url: Absolute URL of the sync endpoint
        authentication: Optional callable returning a bearer token (or None)
        client: Optional ``httpx.Client``; one without a timeout is created
            (and closed by ``close``) when omitted
    """

    def __init__(
        self,
        populate_url: str,
        sync_url: str,
        authentication: Optional[Callable[[], Optional[str]]] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.populate_url = populate_url
        self.sync_url = sync_url
        self._authentication = authentication
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(timeout=None)

    def _headers(self) -> Dict[str, str]:
        """Get headers for a remote request."""
        headers = {"Content-Type": "application/json"}
        if self._authentication is not None:
            token = self._authentication()
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers

    def _request(
        self,
        method: str,
        url: str,
        params: Dict[str, Any],
        body: Optional[List[Dict[str, Any]]] = None,
    ) -> Any:
        try:
            response = self._client.request(
                method, url, params=params, json=body, headers=self._headers()
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise TransportError(f"{method} {url} returned status {status}", status) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(
                f"{method} {url} returned invalid JSON", response.status_code
            ) from e

    def populate(self, store_names: List[str]) -> Dict[str, List[Dict[str, Any]]]:
        """Fetch a full snapshot of ``store_names``."""
        payload = self._request("GET", self.populate_url, {"storeNames": list(store_names)})
        try:
            return PopulateResponse.model_validate(payload).root
        except ValidationError as e:
            raise TransportError(f"Unexpected populate response: {e}") from e

    def sync(self, checkpoint: datetime, batch: List[SyncBatchItem]) -> List[RemoteChange]:
        """Push ``batch`` and return the remote changes since ``checkpoint``."""
        body = [item.model_dump(by_alias=True, mode="json") for item in batch]
        payload = self._request(
            "POST", self.sync_url, {"lastChangeAt": format_timestamp(checkpoint)}, body
        )
        try:
            changes = SyncResponse.model_validate(payload).root
        except ValidationError as e:
            raise TransportError(f"Unexpected sync response: {e}") from e
        logger.debug(f"Sync pushed {len(batch)} changes, received {len(changes)}")
        return changes

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
