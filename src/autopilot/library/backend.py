"""Remote function library client."""

from typing import Any, Optional

import httpx
import structlog

from ..core.errors import ValidationError
from ..core.models import FunctionDefinition


logger = structlog.get_logger()

SEARCH_PATH = "/api/functions/search"
SEARCH_TOP_K = 6


class BackendFunctionClient:
    """
    Looks up workflow definitions on a remote function service.

    Used as the fallback when a sub-workflow is not in the local library.
    Disabled when no base URL is configured.
    """

    def __init__(self, base_url: Optional[str], timeout: float = 15.0):
        self.base_url = (base_url or "").rstrip("/")
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def search(self, query: str, current_url: Optional[str] = None) -> list[dict[str, Any]]:
        """Raw search results: ``[{id, score, functionDef}]``."""
        if not self.enabled:
            return []

        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
            response = await client.post(
                SEARCH_PATH,
                json={"query": query, "currentUrl": current_url, "topK": SEARCH_TOP_K},
            )
            response.raise_for_status()
            try:
                body = response.json()
            except ValueError:
                logger.warning(
                    "backend_payload_invalid",
                    query=query,
                    content_type=response.headers.get("content-type"),
                )
                return []

        if not isinstance(body, dict):
            logger.warning("backend_payload_invalid", query=query, payload_type=type(body).__name__)
            return []
        if not body.get("success"):
            logger.warning("backend_search_failed", query=query, error=body.get("error"))
            return []

        results = body.get("results")
        if not isinstance(results, list):
            return []
        return [r for r in results if isinstance(r, dict)]

    async def fetch_by_name(
        self,
        name: str,
        current_url: Optional[str] = None,
    ) -> Optional[FunctionDefinition]:
        """
        Best definition for a name.

        Prefers a case-insensitive exact name match, else the top result.
        Network and payload errors are logged and reported as not found.
        """
        if not self.enabled or not name:
            return None

        try:
            results = await self.search(name, current_url)
        except httpx.HTTPError as e:
            logger.warning("backend_fetch_failed", name=name, error=str(e))
            return None

        candidates = [r.get("functionDef") for r in results if isinstance(r.get("functionDef"), dict)]
        if not candidates:
            return None

        wanted = name.lower()
        chosen = next(
            (c for c in candidates if str(c.get("name", "")).lower() == wanted),
            candidates[0],
        )

        try:
            definition = FunctionDefinition.parse(chosen)
        except ValidationError as e:
            logger.warning("backend_definition_invalid", name=name, error=e.message)
            return None

        logger.info("backend_function_fetched", name=name, resolved=definition.name)
        return definition
