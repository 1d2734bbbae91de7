"""
HTTP implementation of EnvironmentClient.

This module talks to an environment's REST entity API with:
- Bearer token authentication (password grant against /token)
- One transparent re-authentication when a token is rejected (HTTP 401)
- Offset pagination over the paged-result envelope
- Classification of failures into transient and permanent client errors

Retrying is left to the callers: the extractor retries pages, the loader
retries writes.
"""

import httpx
from typing import Any, Dict, List, Optional, Sequence
from core.config import settings
from core.exceptions import (
    AuthenticationError,
    MissingCredentialsError,
    PermanentClientError,
    TransientClientError,
)
from engine.client import ClientFactory, KeyFilter, Page, WriteReceipt
from engine.credentials import InMemoryCredentials
from models.environment import Environment
import logging

logger = logging.getLogger(__name__)


class HTTPEnvironmentClient:
    """
    EnvironmentClient backed by httpx.

    Attributes:
        environment: The environment this client talks to
        timeout: Request timeout in seconds (default: settings.HTTP_TIMEOUT)
    """

    def __init__(
        self,
        environment: Environment,
        password: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.environment = environment
        self.base_url = environment.base_url.rstrip("/")
        self._password = password
        self.timeout = timeout or settings.HTTP_TIMEOUT
        self._token: Optional[str] = None
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def _fetch_token(self) -> str:
        url = f"{self.base_url}/token"
        try:
            response = await self._client.post(
                url,
                data={
                    "grant_type": "password",
                    "username": self.environment.username,
                    "password": self._password,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise TransientClientError(
                "Token request timed out",
                context={"url": url, "environment_id": self.environment.id},
                original_exception=e
            )
        except httpx.TransportError as e:
            raise TransientClientError(
                "Failed to connect for authentication",
                context={"url": url, "environment_id": self.environment.id},
                original_exception=e
            )

        if response.status_code >= 500 or response.status_code == 429:
            self._raise_for_status(response, url)
        if response.status_code >= 400:
            raise AuthenticationError(
                f"Authentication failed with status {response.status_code}",
                context={"url": url, "environment_id": self.environment.id},
                status_code=response.status_code
            )

        try:
            token = response.json()["access_token"]
        except (ValueError, KeyError, TypeError) as e:
            raise AuthenticationError(
                "Token response did not contain an access token",
                context={"url": url, "environment_id": self.environment.id},
                original_exception=e
            )

        logger.debug(f"Authenticated against environment {self.environment.id}")
        self._token = token
        return token

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Send an authenticated request, re-authenticating once on HTTP 401.

        Raises:
            TransientClientError: timeout, network error, 5xx, 429
            AuthenticationError: credentials rejected
            PermanentClientError: any other 4xx
        """
        token = self._token or await self._fetch_token()

        for refreshed in (False, True):
            headers = {
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
            }
            try:
                response = await self._client.request(method, url, headers=headers, **kwargs)
            except httpx.TimeoutException as e:
                raise TransientClientError(
                    f"Request timeout after {self.timeout} seconds",
                    context={"url": url, "method": method},
                    original_exception=e
                )
            except httpx.TransportError as e:
                raise TransientClientError(
                    "Network error",
                    context={"url": url, "method": method},
                    original_exception=e
                )

            if response.status_code == 401 and not refreshed:
                logger.info(f"Token rejected by {self.environment.id}, re-authenticating")
                self._token = None
                token = await self._fetch_token()
                continue

            self._raise_for_status(response, url)
            return response

        # Second 401 is handled by _raise_for_status above
        raise AuthenticationError("Authentication failed", context={"url": url})

    @staticmethod
    def _raise_for_status(response: httpx.Response, url: str):
        status = response.status_code
        if status < 400:
            return

        context = {"url": url, "response_body": response.text[:500]}

        if status == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_after = float(retry_after) if retry_after is not None else None
            except ValueError:
                retry_after = None
            raise TransientClientError(
                "Rate limit exceeded",
                context=context,
                status_code=status,
                retry_after=retry_after
            )

        if status >= 500:
            raise TransientClientError(
                f"Server error {status}",
                context=context,
                status_code=status
            )

        if status in (401, 403):
            raise AuthenticationError(
                f"Authentication failed for {url}",
                context=context,
                status_code=status
            )

        raise PermanentClientError(
            f"Request rejected with status {status}",
            context=context,
            status_code=status
        )

    # ------------------------------------------------------------------
    # EnvironmentClient API
    # ------------------------------------------------------------------

    async def list_entity_fields(self, entity: str) -> Sequence[str]:
        url = f"{self.base_url}/api/BoEntityDefinition/{entity}"
        response = await self._request("GET", url)
        data = self._json(response, url)
        properties = data.get("Properties", {})
        if isinstance(properties, dict):
            properties = properties.get("$values", [])
        return [p["Name"] for p in properties if isinstance(p, dict) and "Name" in p]

    async def page_entity_rows(
        self,
        entity: str,
        page_token: Optional[str],
        key_filter: Optional[KeyFilter] = None,
        page_size: int = 500,
    ) -> Page:
        url = f"{self.base_url}/api/{entity}"
        offset = int(page_token) if page_token else 0
        params: Dict[str, Any] = {"limit": page_size, "offset": offset}
        if key_filter is not None and key_filter.keys:
            params[key_filter.field_name] = "in:" + "|".join(sorted(key_filter.keys))

        logger.debug(f"Fetching {entity} offset={offset} from {self.environment.id}")
        response = await self._request("GET", url, params=params)
        data = self._json(response, url)

        # Paged-result envelope, or a bare list
        if isinstance(data, list):
            rows = data
            has_next = len(rows) >= page_size
            total = None
            next_offset = offset + len(rows)
        else:
            items = data.get("Items", data.get("items", []))
            rows = items.get("$values", []) if isinstance(items, dict) else items
            has_next = bool(data.get("HasNext", False))
            total = data.get("TotalCount")
            next_offset = data.get("NextOffset", offset + len(rows))

        return Page(
            rows=list(rows),
            next_page_token=str(next_offset) if has_next and rows else None,
            total_count=total
        )

    async def write_entity_row(self, entity: str, row: Dict[str, Any]) -> WriteReceipt:
        url = f"{self.base_url}/api/{entity}"
        body = {"$type": f"{entity}Data", **row}
        response = await self._request("POST", url, json=body)

        identity: List[str] = []
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            elements = data.get("Identity", {}).get("IdentityElements", {})
            if isinstance(elements, dict):
                identity = [str(v) for v in elements.get("$values", [])]
        return WriteReceipt(identity=identity)

    @staticmethod
    def _json(response: httpx.Response, url: str):
        try:
            return response.json()
        except ValueError as e:
            raise PermanentClientError(
                "Failed to parse JSON response",
                context={"url": url, "response_body": response.text[:500]},
                original_exception=e
            )


def http_client_factory(
    credentials: InMemoryCredentials,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> ClientFactory:
    """Build HTTPEnvironmentClient instances from in-memory passwords"""

    async def build(environment: Environment) -> HTTPEnvironmentClient:
        password = credentials.get_password(environment.id)
        if not password:
            raise MissingCredentialsError(environment.id)
        return HTTPEnvironmentClient(environment, password, transport=transport)

    return build
