"""Knowledge-context tool backed by the knowledge relay endpoint.

The relay answers ``{prompt, sessionId}`` with ``{response}``; when its own
upstream is down it still answers 200 with an apology text. Both are valid
tool results. Network errors and non-200 statuses become a
``success: false`` result so the conversation can continue.
"""

import logging
from typing import Any

import aiohttp

from realtime_chat.config import KnowledgeConfig

logger = logging.getLogger(__name__)

TOOL_NAME = "getAdditionalContext"

TOOL_DESCRIPTION = (
    "Elaborate on the user's original query, providing additional context, "
    "specificity, and clarity to create a more detailed, expert-level question. "
    "Transforms a simple query into a richer version suitable for an expert to answer."
)

TOOL_PARAMETERS: dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {
            "type": "string",
            "description": (
                "The elaborated user query. Fully describe the user's original "
                "question, adding depth, context and clarity, as if the user "
                "were asking an expert in the relevant field."
            ),
        },
    },
    "required": ["query"],
}


class KnowledgeContextClient:
    """Client for the knowledge relay endpoint."""

    def __init__(
        self,
        config: KnowledgeConfig,
        conversation_id: str,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize knowledge client.

        Args:
            config: Knowledge endpoint configuration
            conversation_id: Identifier forwarded as ``sessionId``
            session: Optional shared aiohttp session
        """
        self.config = config
        self.conversation_id = conversation_id
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

    async def get_additional_context(self, args: dict[str, Any]) -> dict[str, Any]:
        """Tool handler: look up context for the elaborated query.

        Args:
            args: Tool arguments with a ``query`` string

        Returns:
            ``{"success": bool, "message": str}``
        """
        query = args.get("query")
        if not isinstance(query, str) or not query.strip():
            return {"success": False, "message": "Missing query to fetch additional context."}

        session = await self._ensure_session()
        try:
            async with session.post(
                self.config.url,
                json={"prompt": query, "sessionId": self.conversation_id},
            ) as response:
                if response.status != 200:
                    raise aiohttp.ClientResponseError(
                        response.request_info,
                        response.history,
                        status=response.status,
                        message=f"Failed with status {response.status}",
                    )
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, ValueError) as e:
            logger.error(
                "Knowledge context lookup failed",
                extra={"conversation_id": self.conversation_id, "error": str(e)},
            )
            return {
                "success": False,
                "message": "Unable to retrieve additional context right now.",
            }

        message = data.get("response") if isinstance(data, dict) else None
        logger.debug(
            "Knowledge context received",
            extra={"conversation_id": self.conversation_id, "length": len(message or "")},
        )
        return {"success": True, "message": message or ""}
