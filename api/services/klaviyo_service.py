"""
Klaviyo newsletter subscription (JSON:API, revision-pinned).

Flow: resolve region credentials -> find or create the profile -> best-effort
location/property update -> add the profile to the list.
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from core.config import Settings
from core.errors import ConfigurationError, InvalidRequestError, UpstreamServiceError
from schemas.subscribe import LocationInfo

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
SUPPORTED_REGIONS = ("de", "fr", "es", "it")


class KlaviyoError(Exception):
    """A Klaviyo call returned a non-success status"""

    def __init__(self, message: str, status_code: int, body: Any = None):
        super().__init__(f"{message}: {json.dumps(body) if body is not None else status_code}")
        self.status_code = status_code
        self.body = body


@dataclass(frozen=True)
class RegionCredentials:
    api_key: str
    list_id: str

    @property
    def complete(self) -> bool:
        return bool(self.api_key and self.list_id)


def build_region_table(config: Settings) -> Dict[str, RegionCredentials]:
    """Map region codes to credentials; the "default" entry is the EU account.

    Each regional field falls back independently to the default value.
    """
    default = RegionCredentials(
        api_key=config.klaviyo_api_key_eu or config.klaviyo_api_key,
        list_id=config.klaviyo_list_id_eu or config.klaviyo_list_id,
    )
    table = {"default": default, "eu": default}
    for region in SUPPORTED_REGIONS:
        table[region] = RegionCredentials(
            api_key=getattr(config, f"klaviyo_api_key_{region}") or default.api_key,
            list_id=getattr(config, f"klaviyo_list_id_{region}") or default.list_id,
        )
    return table


def is_valid_email(email: str) -> bool:
    return bool(email) and EMAIL_PATTERN.match(email) is not None


class KlaviyoService:
    """Thin client over the Klaviyo profile and list endpoints"""

    def __init__(
        self,
        config: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = config.klaviyo_base_url.rstrip("/")
        self.revision = config.klaviyo_api_revision
        self.source = config.klaviyo_source
        self.default_api_key = config.klaviyo_api_key
        self.default_list_id = config.klaviyo_list_id
        self.regions = build_region_table(config)
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def configured(self) -> bool:
        return bool(self.default_api_key and self.default_list_id)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def credentials_for(self, region: Optional[str]) -> RegionCredentials:
        code = (region or "").strip().lower()
        return self.regions.get(code, self.regions["default"])

    def _headers(self, api_key: str, with_body: bool = False) -> Dict[str, str]:
        headers = {
            "Authorization": f"Klaviyo-API-Key {api_key}",
            "revision": self.revision,
            "accept": "application/json",
        }
        if with_body:
            headers["Content-Type"] = "application/json"
        return headers

    @staticmethod
    def _error_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text or None

    async def find_profile_id(self, email: str, api_key: str) -> Optional[str]:
        """Look up a profile by exact email; lookup failures count as not found."""
        client = await self._get_client()
        response = await client.get(
            f"{self.base_url}/profiles/",
            params={"filter": f'equals(email,"{email}")'},
            headers=self._headers(api_key),
        )
        if response.status_code >= 400:
            logger.warning(f"Klaviyo profile lookup failed with {response.status_code}")
            return None

        try:
            data = response.json().get("data")
        except (ValueError, AttributeError):
            return None
        if isinstance(data, list) and data and data[0].get("id"):
            return data[0]["id"]
        return None

    async def create_profile(self, email: str, api_key: str, location: Optional[LocationInfo] = None) -> str:
        attributes: Dict[str, Any] = {"email": email, "properties": {"$source": self.source}}
        if location is not None:
            attributes["location"] = location.to_klaviyo()

        client = await self._get_client()
        response = await client.post(
            f"{self.base_url}/profiles/",
            json={"data": {"type": "profile", "attributes": attributes}},
            headers=self._headers(api_key, with_body=True),
        )
        if response.status_code >= 400:
            raise KlaviyoError("Create profile failed", response.status_code, self._error_body(response))

        profile_id = (response.json().get("data") or {}).get("id")
        if not profile_id:
            raise KlaviyoError("Create profile succeeded but no id returned", response.status_code)
        return profile_id

    async def get_profile_properties(self, profile_id: str, api_key: str) -> Dict[str, Any]:
        client = await self._get_client()
        response = await client.get(f"{self.base_url}/profiles/{profile_id}/", headers=self._headers(api_key))
        if response.status_code >= 400:
            return {}
        try:
            properties = response.json()["data"]["attributes"]["properties"]
        except (ValueError, KeyError, TypeError):
            return {}
        return properties if isinstance(properties, dict) else {}

    async def update_profile_properties(
        self,
        profile_id: str,
        partial: Dict[str, Any],
        api_key: str,
        location: Optional[LocationInfo] = None,
    ):
        """Merge `partial` into the stored properties and PATCH the profile."""
        merged = {**await self.get_profile_properties(profile_id, api_key), **partial}
        attributes: Dict[str, Any] = {"properties": merged}
        if location is not None:
            attributes["location"] = location.to_klaviyo()

        client = await self._get_client()
        response = await client.patch(
            f"{self.base_url}/profiles/{profile_id}/",
            json={"data": {"type": "profile", "id": profile_id, "attributes": attributes}},
            headers=self._headers(api_key, with_body=True),
        )
        if response.status_code >= 400:
            raise KlaviyoError("Update profile properties failed", response.status_code, self._error_body(response))

    async def add_profile_to_list(self, list_id: str, profile_id: str, api_key: str):
        client = await self._get_client()
        response = await client.post(
            f"{self.base_url}/lists/{list_id}/relationships/profiles/",
            json={"data": [{"type": "profile", "id": profile_id}]},
            headers=self._headers(api_key, with_body=True),
        )
        if response.status_code == 409:
            # Already a member
            return
        if response.status_code >= 400:
            raise KlaviyoError("Add profile to list failed", response.status_code, self._error_body(response))

    async def resolve_profile_id(self, email: str, api_key: str, location: Optional[LocationInfo]) -> str:
        profile_id = await self.find_profile_id(email, api_key)
        if profile_id:
            return profile_id

        try:
            profile_id = await self.create_profile(email, api_key, location)
        except KlaviyoError as e:
            if e.status_code == 409 or "already exists" in str(e).lower():
                logger.info("Profile already exists, looking it up again")
                profile_id = await self.find_profile_id(email, api_key)
            else:
                raise

        if not profile_id:
            raise UpstreamServiceError("Unable to resolve profile id for email.")
        return profile_id

    async def subscribe(self, email: str, region: Optional[str] = None, location: Optional[LocationInfo] = None):
        """Subscribe an email to the region's list.

        Raises ConfigurationError, InvalidRequestError or UpstreamServiceError.
        """
        credentials = self.credentials_for(region)
        if not credentials.complete:
            raise ConfigurationError("Klaviyo API configuration missing for the specified region.")

        email = email.strip()
        if not is_valid_email(email):
            raise InvalidRequestError("Invalid email address.")

        try:
            profile_id = await self.resolve_profile_id(email, credentials.api_key, location)

            if location is not None:
                try:
                    await self.update_profile_properties(
                        profile_id, {"$source": self.source}, credentials.api_key, location
                    )
                except (KlaviyoError, httpx.HTTPError) as e:
                    logger.warning(f"Failed to update profile properties: {e}")

            await self.add_profile_to_list(credentials.list_id, profile_id, credentials.api_key)
        except (KlaviyoError, httpx.HTTPError) as e:
            logger.error(f"Klaviyo subscription failed: {e}")
            raise UpstreamServiceError("Failed to process subscription", details=str(e))

        logger.info(f"Subscribed profile {profile_id} to list {credentials.list_id}")
