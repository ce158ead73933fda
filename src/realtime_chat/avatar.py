"""Speak capability for an external streaming avatar.

The avatar surface itself (video, session start) lives outside this package;
it hands us the streaming session id. We fetch an avatar token from the token
relay and submit each finalized assistant message as a repeat task.
"""

import logging
from typing import Any

import aiohttp

from realtime_chat.config import AvatarConfig

logger = logging.getLogger(__name__)


class AvatarSpeechClient:
    """Submits text for an external avatar to speak."""

    def __init__(
        self, config: AvatarConfig, session: aiohttp.ClientSession | None = None
    ) -> None:
        """Initialize avatar speech client.

        Args:
            config: Avatar configuration (token relay, API base, session id)
            session: Optional shared aiohttp session
        """
        if not config.session_id:
            raise ValueError("Avatar speech requires avatar.session_id")
        self.config = config
        self._session = session
        self._owns_session = session is None
        self._token: str | None = None

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
        self._token = None

    async def _get_token(self) -> str:
        if self._token is not None:
            return self._token

        session = await self._ensure_session()
        async with session.get(self.config.token_url) as response:
            response.raise_for_status()
            data = await response.json(content_type=None)

        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise ValueError("Avatar token relay returned no token")
        self._token = str(token)
        return self._token

    async def speak(self, args: dict[str, Any]) -> dict[str, Any]:
        """Tool handler: make the avatar repeat ``args["message"]``.

        Raises:
            aiohttp.ClientError: If the avatar API rejects the task
            ValueError: If no token could be obtained
        """
        message = args.get("message")
        if not isinstance(message, str) or not message.strip():
            return {"success": False, "message": "Nothing to speak."}

        token = await self._get_token()
        session = await self._ensure_session()
        async with session.post(
            f"{self.config.api_url}/v1/streaming.task",
            json={
                "session_id": self.config.session_id,
                "text": message,
                "task_type": "repeat",
            },
            headers={"Authorization": f"Bearer {token}"},
        ) as response:
            if response.status == 401:
                self._token = None
            response.raise_for_status()

        logger.debug(
            "Avatar speech submitted",
            extra={"avatar_session": self.config.session_id, "length": len(message)},
        )
        return {"success": True}
