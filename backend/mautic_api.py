"""
Mautic REST API Gateway.
OAuth 2.0 (password + refresh_token grants) and paginated resource fetches for one tenant.
"""

import httpx
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, List, Callable, Awaitable

import config
from crypto_utils import CredentialCodec, get_codec

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
DEFAULT_EXPIRES_IN = 3600


@dataclass(frozen=True)
class ResourceConfig:
    endpoint: str
    collection_key: str
    extra_params: Optional[Dict[str, Any]] = None


# Mautic names the segment collection "lists"; everything else matches its endpoint
RESOURCES: Dict[str, ResourceConfig] = {
    "contacts": ResourceConfig("/contacts", "contacts", {"orderBy": "id", "orderByDir": "DESC"}),
    "campaigns": ResourceConfig("/campaigns", "campaigns"),
    "emails": ResourceConfig("/emails", "emails"),
    "segments": ResourceConfig("/segments", "lists"),
}


class MauticAPIError(Exception):
    """Base exception for Mautic gateway errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class NoTokenError(MauticAPIError):
    """No access token is held; the tenant must authenticate first."""
    pass


class AuthenticationError(MauticAPIError):
    """Initial OAuth password grant was rejected or could not be performed."""
    pass


class TokenRefreshError(MauticAPIError):
    """OAuth refresh_token grant was rejected or could not be performed."""
    pass


class RemoteRequestError(MauticAPIError):
    """Transport failure or non-2xx response from the resource API."""
    pass


@dataclass
class TokenSet:
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat(),
        }


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:500] or None


def remote_error_message(payload: Any) -> Optional[str]:
    """Pull a human-readable message out of a Mautic / OAuth error body."""
    if not isinstance(payload, dict):
        return payload if isinstance(payload, str) and payload else None

    errors = payload.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        return errors[0].get("message")

    error = payload.get("error")
    if isinstance(error, dict):
        return error.get("message")
    if isinstance(error, str):
        return payload.get("error_description") or error
    return None


TokenRefreshCallback = Callable[[TokenSet], Awaitable[None]]


class MauticAPIClient:
    """Client for one Mautic instance. Holds decrypted credentials and the live token set."""

    def __init__(self, base_url: str, client_id: str, client_secret: str,
                 access_token: str = None, refresh_token: str = None,
                 token_expires_at: datetime = None,
                 on_token_refresh: TokenRefreshCallback = None,
                 transport: httpx.AsyncBaseTransport = None,
                 timeout: float = None):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.token_expires_at = ensure_utc(token_expires_at)
        self.on_token_refresh = on_token_refresh
        self._transport = transport
        self._timeout = timeout if timeout is not None else config.MAUTIC_TIMEOUT

    @classmethod
    def from_tenant(cls, tenant, codec: CredentialCodec = None, **kwargs) -> "MauticAPIClient":
        """Build a gateway from a stored tenant row, decrypting its secrets once."""
        codec = codec or get_codec()
        return cls(
            base_url=tenant.base_url,
            client_id=codec.decrypt(tenant.client_id),
            client_secret=codec.decrypt(tenant.client_secret),
            access_token=codec.decrypt(tenant.access_token),
            refresh_token=codec.decrypt(tenant.refresh_token),
            token_expires_at=tenant.token_expires_at,
            **kwargs,
        )

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    @property
    def token_set(self) -> Optional[TokenSet]:
        if not self.access_token:
            return None
        return TokenSet(self.access_token, self.refresh_token, self.token_expires_at)

    def is_token_expired(self) -> bool:
        """True when no expiry is recorded or the expiry instant has been reached."""
        if not self.token_expires_at:
            return True
        return _utc_now() >= self.token_expires_at

    # ==================== OAuth ====================

    async def _token_grant(self, grant: dict) -> dict:
        token_url = f"{self.base_url}/oauth/v2/token"
        form = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            **grant,
        }

        async with self._http() as client:
            response = await client.post(token_url, data=form)

        if not response.is_success:
            payload = _safe_json(response)
            raise MauticAPIError(
                remote_error_message(payload) or f"Token endpoint returned {response.status_code}",
                status_code=response.status_code,
                payload=payload,
            )

        data = _safe_json(response)
        if not isinstance(data, dict) or not data.get("access_token"):
            raise MauticAPIError("Token endpoint returned no access_token", payload=data)
        return data

    def _apply_token_response(self, data: dict, keep_refresh_token: bool) -> TokenSet:
        self.access_token = data["access_token"]
        new_refresh = data.get("refresh_token")
        if new_refresh or not keep_refresh_token:
            self.refresh_token = new_refresh
        try:
            expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError, OverflowError):
            logger.warning(f"Unparseable expires_in {data.get('expires_in')!r}, assuming {DEFAULT_EXPIRES_IN}s")
            expires_in = DEFAULT_EXPIRES_IN
        self.token_expires_at = _utc_now() + timedelta(seconds=expires_in)
        return self.token_set

    async def get_initial_token(self, username: str, password: str) -> TokenSet:
        """Exchange Mautic user credentials for a token set (OAuth2 password grant)."""
        try:
            data = await self._token_grant({
                "grant_type": "password",
                "username": username,
                "password": password,
            })
        except MauticAPIError as e:
            logger.error(f"Mautic authentication failed for {self.base_url}: {e.payload or e}")
            raise AuthenticationError(
                f"Failed to get initial access token: {e}",
                status_code=e.status_code, payload=e.payload,
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Mautic authentication failed for {self.base_url}: {e}")
            raise AuthenticationError(f"Failed to get initial access token: {e}") from e

        token_set = self._apply_token_response(data, keep_refresh_token=False)
        logger.info(f"Obtained initial Mautic token for {self.base_url}")
        return token_set

    async def refresh_access_token(self) -> TokenSet:
        """
        Refresh the access token with the stored refresh token.
        Mautic may or may not rotate the refresh token; the old one is kept when none is returned.
        """
        try:
            data = await self._token_grant({
                "grant_type": "refresh_token",
                "refresh_token": self.refresh_token,
            })
        except MauticAPIError as e:
            logger.error(f"Mautic token refresh failed for {self.base_url}: {e.payload or e}")
            raise TokenRefreshError(
                f"Failed to refresh access token: {e}",
                status_code=e.status_code, payload=e.payload,
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Mautic token refresh failed for {self.base_url}: {e}")
            raise TokenRefreshError(f"Failed to refresh access token: {e}") from e

        token_set = self._apply_token_response(data, keep_refresh_token=True)
        logger.info(f"Refreshed Mautic token for {self.base_url}")

        if self.on_token_refresh:
            await self.on_token_refresh(token_set)
        return token_set

    # ==================== Requests ====================

    async def request(self, endpoint: str, method: str = "GET", body: dict = None,
                      params: dict = None) -> Any:
        """Make an authenticated call to {base_url}/api{endpoint}."""
        if not self.access_token:
            raise NoTokenError(
                "No access token available. Please authenticate first by providing "
                "username/password or manually setting tokens."
            )

        if self.is_token_expired() and self.refresh_token:
            await self.refresh_access_token()

        url = f"{self.base_url}/api{endpoint}"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

        try:
            async with self._http() as client:
                response = await client.request(
                    method.upper(), url, headers=headers, params=params, json=body
                )
        except httpx.TimeoutException as e:
            logger.error(f"Mautic request timed out for {endpoint}: {e}")
            raise RemoteRequestError(f"Connection timeout calling {endpoint}") from e
        except httpx.RequestError as e:
            logger.error(f"Mautic request failed for {endpoint}: {e}")
            raise RemoteRequestError(f"Connection error calling {endpoint}: {e}") from e

        # Mautic answers 3xx (redirect to its login page) when the API is disabled or the URL is wrong
        if not response.is_success:
            payload = _safe_json(response)
            logger.error(f"API request failed for {endpoint}: {response.status_code} {payload}")
            message = remote_error_message(payload) or f"API error: {response.status_code}"
            if response.is_redirect:
                message += f" (redirected to {response.headers.get('location')})"
            raise RemoteRequestError(
                message,
                status_code=response.status_code,
                payload=payload,
            )

        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"Non-JSON response for {endpoint}: {response.text[:200]!r}")
            raise RemoteRequestError(
                f"Invalid JSON response from {endpoint}",
                status_code=response.status_code,
                payload=response.text[:500],
            ) from e

    async def test_connection(self) -> Dict[str, Any]:
        """Check the API with a one-record contact listing. Never raises."""
        try:
            await self.request("/contacts", params={"limit": 1})
            return {"success": True, "message": "Connection successful"}
        except MauticAPIError as e:
            return {"success": False, "message": remote_error_message(e.payload) or str(e)}
        except Exception as e:
            return {"success": False, "message": str(e)}

    # ==================== Resources ====================

    async def fetch_page(self, resource: str, page: int = 1, limit: int = PAGE_SIZE) -> dict:
        """Fetch one page of a resource listing (start = (page - 1) * limit)."""
        resource_config = RESOURCES[resource]
        params = {"start": (page - 1) * limit, "limit": limit}
        if resource_config.extra_params:
            params.update(resource_config.extra_params)
        return await self.request(resource_config.endpoint, params=params)

    @staticmethod
    def _extract_collection(payload: Any, key: str) -> List[dict]:
        # Mautic returns a mapping keyed by id, or an empty JSON array when nothing matches
        collection = payload.get(key) if isinstance(payload, dict) else None
        if not collection:
            return []
        if isinstance(collection, dict):
            return list(collection.values())
        return list(collection)

    async def fetch_all(self, resource: str) -> List[dict]:
        """
        Fetch every record of a resource, page by page.
        Stops on an empty page or on a short page (fewer than PAGE_SIZE items).
        """
        collection_key = RESOURCES[resource].collection_key
        records: List[dict] = []
        page = 1

        while True:
            payload = await self.fetch_page(resource, page, PAGE_SIZE)
            batch = self._extract_collection(payload, collection_key)

            if not batch:
                break

            records.extend(batch)

            if len(batch) < PAGE_SIZE:
                break
            page += 1

        logger.debug(f"Fetched {len(records)} {resource} from {self.base_url} in {page} page(s)")
        return records

    async def fetch_all_contacts(self) -> List[dict]:
        return await self.fetch_all("contacts")

    async def fetch_all_campaigns(self) -> List[dict]:
        return await self.fetch_all("campaigns")

    async def fetch_all_emails(self) -> List[dict]:
        return await self.fetch_all("emails")

    async def fetch_all_segments(self) -> List[dict]:
        return await self.fetch_all("segments")

    async def fetch_email_stats(self, email_id: int) -> dict:
        """Fetch a single email with its statistics."""
        return await self.request(f"/emails/{email_id}")

    async def fetch_contact_stats(self) -> Dict[str, int]:
        response = await self.request("/contacts", params={"limit": 1})
        total = response.get("total") if isinstance(response, dict) else None
        return {"total": int(total or 0)}
