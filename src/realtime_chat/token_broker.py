"""Short-lived credential client.

Requests an ephemeral client secret from the token-issuing endpoint before
each session start. No retries here; the caller decides whether to try again.
"""

import logging
from typing import Any

import aiohttp
from pydantic import BaseModel, Field, SecretStr, ValidationError

from realtime_chat.config import TokenBrokerConfig
from realtime_chat.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class Credential(BaseModel):
    """Ephemeral credential for the realtime endpoint.

    The secret is a SecretStr so it never shows up in reprs or logs.
    """

    value: SecretStr = Field(..., description="Bearer secret")
    expires_at: int | None = Field(default=None, description="Expiry (unix seconds)")

    def bearer(self) -> str:
        """Authorization header value."""
        return f"Bearer {self.value.get_secret_value()}"


def parse_credential(data: Any) -> Credential:
    """Parse a broker response body.

    Accepts ``{"value": ...}`` and the relay's ``{"client_secret": {"value": ...}}``.

    Raises:
        UpstreamUnavailable: If the body is not a recognised credential shape
    """
    if isinstance(data, dict) and isinstance(data.get("client_secret"), dict):
        data = data["client_secret"]
    try:
        credential = Credential.model_validate(data)
    except ValidationError as e:
        raise UpstreamUnavailable("Token endpoint returned a malformed credential") from e
    if not credential.value.get_secret_value():
        raise UpstreamUnavailable("Token endpoint returned an empty credential")
    return credential


class TokenBrokerClient:
    """Fetches short-lived credentials from the token-issuing endpoint."""

    def __init__(
        self, config: TokenBrokerConfig, session: aiohttp.ClientSession | None = None
    ) -> None:
        """Initialize token broker client.

        Args:
            config: Token endpoint configuration
            session: Optional shared aiohttp session (created lazily otherwise)
        """
        self.config = config
        self._session = session
        self._owns_session = session is None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the aiohttp session if this client created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def fetch_credential(self) -> Credential:
        """Request a new credential.

        Returns:
            Parsed credential

        Raises:
            UpstreamUnavailable: On network failure, non-success status or a
                malformed body
        """
        session = await self._ensure_session()
        logger.info("Requesting session credential", extra={"url": self.config.url})

        try:
            async with session.post(
                self.config.url, headers={"Content-Type": "application/json"}
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    logger.error(
                        "Token endpoint request failed",
                        extra={"status": response.status, "body": body[:200]},
                    )
                    raise UpstreamUnavailable(
                        f"Failed to fetch session credential: {response.status}"
                    )
                data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise UpstreamUnavailable(f"Token endpoint unreachable: {e}") from e
        except ValueError as e:
            raise UpstreamUnavailable("Token endpoint returned invalid JSON") from e

        return parse_credential(data)
