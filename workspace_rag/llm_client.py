"""OpenAI-compatible embeddings client wrapper with error handling."""
import httpx
from typing import Dict, Optional
import structlog

from workspace_rag import config

logger = structlog.get_logger()


class OpenAIClient:
    """Async client for an OpenAI-compatible embeddings API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            api_key: Bearer token for the API
            base_url: API base URL (defaults to config.OPENAI_BASE_URL)
            timeout: Request timeout in seconds (defaults to config.EMBEDDING_TIMEOUT)
            transport: Optional httpx transport (used to stub the API in tests)
        """
        self.api_key = api_key
        self.base_url = (base_url or config.OPENAI_BASE_URL).rstrip("/")
        self.timeout = timeout or config.EMBEDDING_TIMEOUT
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def embeddings(
        self,
        prompt: str,
        model: str = None,
    ) -> Dict:
        """Generate an embedding for a text prompt.

        Args:
            prompt: Text to embed
            model: Model to use (defaults to config.EMBEDDING_MODEL)

        Returns:
            Response dict with a 'data' list whose items carry 'embedding'

        Raises:
            httpx.HTTPError: On API errors
        """
        model = model or config.EMBEDDING_MODEL

        payload = {
            "model": model,
            "input": prompt,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                logger.debug(
                    "openai_embedding_request",
                    model=model,
                    prompt_length=len(prompt),
                )

                response = await client.post(
                    f"{self.base_url}/embeddings",
                    json=payload,
                    headers=self._headers(),
                )
                response.raise_for_status()

                data = response.json()

                logger.debug(
                    "openai_embedding_response",
                    model=model,
                    items=len(data.get("data", [])),
                )

                return data

        except httpx.HTTPStatusError as e:
            logger.error(
                "openai_http_error",
                error=str(e),
                status_code=e.response.status_code,
            )
            raise
        except httpx.HTTPError as e:
            logger.error("openai_embedding_error", error=str(e), base_url=self.base_url)
            raise
