"""OpenRouter embeddings client with error handling.

Turns texts into embedding vectors through an OpenAI-compatible
``/embeddings`` endpoint. Every failure mode (HTTP status, network fault,
timeout, malformed payload) is raised as ProviderError; nothing is retried.
"""
import math
from typing import Any, List, Optional, Sequence

import httpx
import structlog

from knowbase import config
from knowbase.errors import InputError, ProviderError

logger = structlog.get_logger()


def _is_vector(values: list) -> bool:
    """True for a non-empty flat list of finite numbers."""
    return bool(values) and all(
        isinstance(v, (int, float))
        and not isinstance(v, bool)
        and math.isfinite(v)
        for v in values
    )


class OpenRouterClient:
    """Async client for an OpenRouter-compatible embeddings API."""

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        timeout: float = None,
        app_title: str = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: API base URL (defaults to config.OPENROUTER_BASE_URL)
            api_key: Default API key, used when a call doesn't pass one
            timeout: Request timeout in seconds (defaults to config.PROVIDER_TIMEOUT)
            app_title: Value of the X-Title header
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = (base_url or config.OPENROUTER_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else config.OPENROUTER_API_KEY
        self.timeout = timeout or config.PROVIDER_TIMEOUT
        self.app_title = app_title or config.APP_TITLE
        self.transport = transport

    def _headers(self, api_key: str) -> dict:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "X-Title": self.app_title,
        }

    async def embeddings(
        self,
        inputs: Sequence[str],
        model: str = None,
        api_key: str = None,
    ) -> List[List[float]]:
        """Generate one embedding per input text, in input order.

        Args:
            inputs: Texts to embed
            model: Model to use (defaults to config.EMBEDDING_MODEL)
            api_key: API key for this call (defaults to the client's key)

        Returns:
            List of embedding vectors, same length and order as inputs

        Raises:
            InputError: If inputs are empty or no API key is available
            ProviderError: On any provider failure or malformed response
        """
        model = model or config.EMBEDDING_MODEL
        api_key = api_key or self.api_key
        inputs = list(inputs)

        if not inputs:
            raise InputError("No texts to embed", "embeddings")

        if not api_key:
            raise InputError("Missing API key for embedding provider", "embeddings")

        payload = {
            "model": model,
            "input": inputs,
        }

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                logger.debug(
                    "embedding_request",
                    model=model,
                    input_count=len(inputs),
                )

                response = await client.post(
                    f"{self.base_url}/embeddings",
                    headers=self._headers(api_key),
                    json=payload,
                )
                response.raise_for_status()
                data = response.json()

        except httpx.TimeoutException as e:
            logger.error("embedding_timeout", model=model, timeout=self.timeout)
            raise ProviderError(
                f"Embedding request timed out after {self.timeout}s", "embeddings"
            ) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            body = e.response.text[:500]
            logger.error("embedding_http_error", model=model, status_code=status, body=body)
            raise ProviderError(
                f"Embeddings HTTP {status}" + (f": {body}" if body else ""),
                "embeddings",
                status_code=status,
            ) from e
        except httpx.HTTPError as e:
            logger.error("embedding_connection_error", error=str(e), base_url=self.base_url)
            raise ProviderError(f"Embedding request failed: {e}", "embeddings") from e
        except ValueError as e:
            logger.error("embedding_invalid_json", model=model, error=str(e))
            raise ProviderError("Embeddings response is not valid JSON", "embeddings") from e

        vectors = self._parse_embeddings(data)

        if len(vectors) != len(inputs):
            logger.error(
                "embedding_count_mismatch",
                expected=len(inputs),
                received=len(vectors),
            )
            raise ProviderError(
                f"Expected {len(inputs)} embeddings, got {len(vectors)}",
                "embeddings",
                expected=len(inputs),
                received=len(vectors),
            )

        logger.debug(
            "embedding_response",
            model=model,
            count=len(vectors),
            dimension=len(vectors[0]) if vectors else 0,
        )

        return vectors

    @staticmethod
    def _parse_embeddings(data: Any) -> List[List[float]]:
        """Extract vectors from an OpenAI-style ``{"data": [{"embedding": [...]}]}`` payload."""
        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise ProviderError("Embeddings response missing data[]", "embeddings")

        for item in items:
            if not isinstance(item, dict) or not isinstance(item.get("embedding"), list):
                raise ProviderError("Embeddings item missing embedding[]", "embeddings")
            if not _is_vector(item["embedding"]):
                raise ProviderError("Embeddings item has a malformed vector", "embeddings")

        # Providers may return items out of order; restore input order when indexed
        if items and all(isinstance(item.get("index"), int) for item in items):
            items = sorted(items, key=lambda item: item["index"])

        return [item["embedding"] for item in items]
