"""LINE Messaging API client."""
import logging
from typing import Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

MULTICAST_MAX_RECIPIENTS = 500


class LineApiError(Exception):
    """
    A LINE API call did not succeed.

    `status_code` is None for network errors and timeouts; callers treat both
    the same way (delivery failed, remote side effects unknown).
    """

    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail

    def __str__(self):
        base = super().__str__()
        if self.status_code is not None:
            base = f"{base} (HTTP {self.status_code})"
        if self.detail:
            base = f"{base}: {self.detail[:500]}"
        return base


class LineClient:
    """Client for one channel's access token (shares the gateway's HTTP pool)."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        access_token: str,
        api_base_url: str = "https://api.line.me",
        data_api_base_url: str = "https://api-data.line.me",
    ):
        self._http = http
        self.access_token = access_token
        self.api_url = api_base_url.rstrip("/") + "/v2/bot"
        self.data_api_url = data_api_base_url.rstrip("/") + "/v2/bot"

    async def _request(
        self,
        method: str,
        url: str,
        *,
        what: str,
        json: Optional[Dict] = None,
        content: Optional[bytes] = None,
        content_type: Optional[str] = None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        if content_type:
            headers["Content-Type"] = content_type
        try:
            response = await self._http.request(method, url, headers=headers, json=json, content=content)
        except httpx.HTTPError as e:
            logger.error(f"LINE {what} failed: {e!r}")
            raise LineApiError(f"LINE {what} failed", detail=repr(e)) from e

        if response.status_code >= 400:
            logger.error(f"LINE {what} failed: HTTP {response.status_code} {response.text[:500]}")
            raise LineApiError(f"LINE {what} failed", status_code=response.status_code, detail=response.text)
        return response

    async def get_profile(self, user_id: str) -> Dict:
        """
        Get a user's profile.

        Returns:
            Dict with displayName and optionally pictureUrl, statusMessage
        """
        response = await self._request("GET", f"{self.api_url}/profile/{user_id}", what="get profile")
        return response.json()

    async def push_message(self, to: str, messages: List[Dict]) -> None:
        await self._request(
            "POST",
            f"{self.api_url}/message/push",
            what="push message",
            json={"to": to, "messages": messages},
        )

    async def multicast(self, to: List[str], messages: List[Dict]) -> None:
        """Send one payload to up to MULTICAST_MAX_RECIPIENTS users."""
        if len(to) > MULTICAST_MAX_RECIPIENTS:
            raise ValueError(f"multicast accepts at most {MULTICAST_MAX_RECIPIENTS} recipients, got {len(to)}")
        if not to:
            return
        await self._request(
            "POST",
            f"{self.api_url}/message/multicast",
            what="multicast",
            json={"to": list(to), "messages": messages},
        )

    # ========== Rich menus ==========

    async def create_rich_menu(self, definition: Dict) -> str:
        response = await self._request("POST", f"{self.api_url}/richmenu", what="create rich menu", json=definition)
        rich_menu_id = (response.json() or {}).get("richMenuId")
        if not rich_menu_id:
            raise LineApiError("LINE create rich menu returned no richMenuId", status_code=response.status_code)
        return str(rich_menu_id)

    async def upload_rich_menu_image(self, rich_menu_id: str, image: bytes, content_type: str) -> None:
        await self._request(
            "POST",
            f"{self.data_api_url}/richmenu/{rich_menu_id}/content",
            what="upload rich menu image",
            content=image,
            content_type=content_type,
        )

    async def delete_rich_menu(self, rich_menu_id: str) -> None:
        await self._request("DELETE", f"{self.api_url}/richmenu/{rich_menu_id}", what="delete rich menu")

    async def link_rich_menu_to_user(self, user_id: str, rich_menu_id: str) -> None:
        await self._request(
            "POST", f"{self.api_url}/user/{user_id}/richmenu/{rich_menu_id}", what="link rich menu"
        )

    async def unlink_rich_menu_from_user(self, user_id: str) -> None:
        await self._request("DELETE", f"{self.api_url}/user/{user_id}/richmenu", what="unlink rich menu")

    async def set_default_rich_menu(self, rich_menu_id: str) -> None:
        """Platform-wide default (users without a per-user link)."""
        await self._request(
            "POST", f"{self.api_url}/user/all/richmenu/{rich_menu_id}", what="set default rich menu"
        )


class LineGateway:
    """Owns the shared HTTP client and hands out per-channel LineClients."""

    def __init__(
        self,
        api_base_url: str = "https://api.line.me",
        data_api_base_url: str = "https://api-data.line.me",
        timeout: float = 30.0,
        forward_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base_url = api_base_url
        self.data_api_base_url = data_api_base_url
        self.forward_timeout = forward_timeout
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            transport=transport,
        )

    @classmethod
    def from_config(cls, config) -> "LineGateway":
        return cls(
            api_base_url=config.line_api_base_url,
            data_api_base_url=config.line_data_api_base_url,
            timeout=config.line_api_timeout,
            forward_timeout=config.webhook_forward_timeout,
        )

    def client_for(self, channel) -> LineClient:
        return LineClient(
            self._client,
            channel.channel_access_token,
            api_base_url=self.api_base_url,
            data_api_base_url=self.data_api_base_url,
        )

    async def fetch_image(self, url: str) -> tuple[bytes, str]:
        """Download a rich-menu image; returns (bytes, content type)."""
        try:
            response = await self._client.get(url, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to download image {url}: {e!r}")
            status = e.response.status_code if isinstance(e, httpx.HTTPStatusError) else None
            raise LineApiError("image download failed", status_code=status, detail=repr(e)) from e
        content_type = response.headers.get("content-type", "image/png").split(";")[0].strip()
        return response.content, content_type or "image/png"

    async def forward_webhook(self, url: str, body: bytes, signature: str) -> bool:
        """Relay a raw webhook body; never raises."""
        try:
            response = await self._client.post(
                url,
                content=body,
                headers={"Content-Type": "application/json", "X-Line-Signature": signature},
                timeout=self.forward_timeout,
            )
        except httpx.HTTPError as e:
            logger.warning(f"Webhook relay to {url} failed: {e!r}")
            return False
        if response.status_code >= 400:
            logger.warning(f"Webhook relay to {url} returned HTTP {response.status_code}")
            return False
        return True

    async def close(self) -> None:
        """Close underlying HTTP resources."""
        try:
            await self._client.aclose()
        except Exception as e:
            logger.debug(f"Error closing HTTP client: {e}")
