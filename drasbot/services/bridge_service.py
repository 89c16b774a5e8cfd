from typing import Optional

import httpx

from drasbot.logging_config import get_logger
from drasbot.services.result import Result

logger = get_logger("bridge_service")

WHATSAPP_SERVER = "s.whatsapp.net"


def to_jid(identity: str) -> str:
    """Bare phone numbers become user JIDs; anything with a server part is kept."""
    identity = identity.strip()
    if "@" in identity:
        return identity
    return f"{identity.lstrip('+')}@{WHATSAPP_SERVER}"


class BridgeTransport:
    """Outbound side of the WhatsApp bridge REST API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def send(self, identity: str, text: str, media_path: Optional[str] = None) -> Result[str]:
        payload = {"recipient": to_jid(identity), "message": text}
        if media_path:
            payload["media_path"] = media_path
        try:
            response = await self._get_client().post(f"{self.base_url}/api/send", json=payload)
        except httpx.TimeoutException as e:
            logger.warning("Bridge send timed out", extra={"context": {"identity": identity, "error": str(e)}})
            return Result.failure(f"timeout: {e}", "transport_error")
        except httpx.HTTPError as e:
            logger.warning("Bridge send failed", extra={"context": {"identity": identity, "error": str(e)}})
            return Result.failure(str(e), "transport_error")

        if response.status_code >= 400:
            logger.warning(
                "Bridge rejected message",
                extra={"context": {"identity": identity, "status": response.status_code}},
            )
            return Result.failure(f"HTTP {response.status_code}", "transport_error")

        try:
            data = response.json()
        except ValueError:
            data = {}
        if isinstance(data, dict) and data.get("success") is False:
            error = data.get("message") or data.get("error") or "bridge reported failure"
            logger.warning("Bridge reported failure", extra={"context": {"identity": identity, "error": error}})
            return Result.failure(str(error), "transport_error")

        message_id = data.get("message_id") if isinstance(data, dict) else None
        return Result.success(message_id or payload["recipient"])

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
