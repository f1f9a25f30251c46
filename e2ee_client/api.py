"""
Key server collaborator.

The engine only needs six calls from the server: fetch a peer's key bundle,
upload identity/prekeys, upload more one-time prekeys, read the remaining
one-time prekey count, and upload/fetch sender key distributions.
KeyServer describes that contract; KeyServerClient implements it over HTTPS.
"""

from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import BaseModel, ValidationError

from e2ee_crypto.x3dh import PreKeyBundle

from .errors import KeyServerError, UploadFailed


class SenderKeyDistributionRecord(BaseModel):
    """A distribution as stored by the server for one channel member"""
    user_id: str
    chain_id: int
    distribution: Dict[str, Any]


class PrekeyCount(BaseModel):
    count: int


class KeyServer(Protocol):
    """Server-side operations the protocol engine depends on"""

    async def get_key_bundle(self, peer_id: str) -> PreKeyBundle:
        ...

    async def upload_identity_and_prekeys(self, identity_key: bytes, signed_prekey: Dict,
                                          one_time_prekeys: List[Dict]) -> None:
        ...

    async def upload_signed_prekey(self, signed_prekey: Dict) -> None:
        ...

    async def upload_one_time_prekeys(self, prekeys: List[Dict]) -> None:
        ...

    async def get_one_time_prekey_count(self) -> int:
        ...

    async def upload_sender_key_distribution(self, channel_id: str, chain_id: int,
                                             distribution: Dict) -> None:
        ...

    async def get_sender_key_distributions(self, channel_id: str) -> List[SenderKeyDistributionRecord]:
        ...


class KeyServerClient:
    """
    HTTP implementation of KeyServer.

    Byte fields are sent and received as hex strings.
    """

    def __init__(self, server_url: str = "http://localhost:8000", token: Optional[str] = None,
                 timeout: float = 10.0, http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize the key server client.

        Args:
            server_url: Base URL of the chat server
            token: Bearer token of the logged-in user
            timeout: Request timeout in seconds
            http_client: Preconfigured client (its base URL must point at the server)
        """
        self.server_url = server_url
        self.http_client = http_client or httpx.AsyncClient(base_url=server_url, timeout=timeout)
        self.token = token

    def _headers(self) -> Dict[str, str]:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    async def _request(self, method: str, path: str, json: Any = None,
                       upload: bool = False) -> httpx.Response:
        error_class = UploadFailed if upload else KeyServerError
        try:
            response = await self.http_client.request(method, path, json=json, headers=self._headers())
        except httpx.HTTPError as e:
            raise error_class(f"{method} {path} failed: {e}")

        if response.status_code >= 400:
            try:
                detail = response.json().get('detail', 'Unknown error')
            except (ValueError, AttributeError):
                detail = response.text or 'Unknown error'
            raise error_class(
                f"{method} {path} returned {response.status_code}: {detail}",
                status_code=response.status_code
            )
        return response

    async def get_key_bundle(self, peer_id: str) -> PreKeyBundle:
        response = await self._request("GET", f"/api/keys/{peer_id}/bundle")
        try:
            return PreKeyBundle.from_dict(response.json())
        except (KeyError, TypeError, ValueError) as e:
            raise KeyServerError(f"Malformed key bundle for {peer_id}: {e}")

    async def upload_identity_and_prekeys(self, identity_key: bytes, signed_prekey: Dict,
                                          one_time_prekeys: List[Dict]):
        await self._request("POST", "/api/keys/register", json={
            "identity_key": identity_key.hex(),
            "signed_prekey": signed_prekey,
            "one_time_prekeys": one_time_prekeys
        }, upload=True)

    async def upload_signed_prekey(self, signed_prekey: Dict):
        await self._request("POST", "/api/keys/prekeys/signed", json=signed_prekey, upload=True)

    async def upload_one_time_prekeys(self, prekeys: List[Dict]):
        await self._request("POST", "/api/keys/prekeys/one-time", json=prekeys, upload=True)

    async def get_one_time_prekey_count(self) -> int:
        response = await self._request("GET", "/api/keys/prekeys/count")
        try:
            return PrekeyCount.model_validate(response.json()).count
        except (ValueError, ValidationError) as e:
            raise KeyServerError(f"Malformed prekey count: {e}")

    async def upload_sender_key_distribution(self, channel_id: str, chain_id: int, distribution: Dict):
        await self._request("POST", f"/api/channels/{channel_id}/sender-keys", json={
            "chain_id": chain_id,
            "distribution": distribution
        }, upload=True)

    async def get_sender_key_distributions(self, channel_id: str) -> List[SenderKeyDistributionRecord]:
        response = await self._request("GET", f"/api/channels/{channel_id}/sender-keys")
        try:
            return [SenderKeyDistributionRecord.model_validate(item) for item in response.json()]
        except (ValueError, TypeError, ValidationError) as e:
            raise KeyServerError(f"Malformed sender key list for channel {channel_id}: {e}")

    async def aclose(self):
        """Close the underlying HTTP client"""
        await self.http_client.aclose()
