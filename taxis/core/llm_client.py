import asyncio
from typing import Any, Dict, List, Optional, Tuple

import httpx
from httpx import HTTPStatusError, TimeoutException

from taxis.core.exceptions import APIClientError, APITimeoutError, ModelUnavailableError
from taxis.utils.logging import get_logger

LOGGER = get_logger(__name__)


class BaseLLMClient:
    """Base client for LLM API interactions.

    Handles common logic for HTTP requests, retries, timeout management,
    and error logging.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 45,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the LLM client.

        Args:
            api_key: API key for authentication
            base_url: Base URL for the API
            timeout: Request timeout in seconds
            max_retries: Maximum number of attempts per call
            retry_delay: Base delay for exponential backoff
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.transport = transport
        self.logger = LOGGER

    async def call_api(
        self,
        endpoint: str = "",
        payload: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """POST to the API with retry logic.

        Args:
            endpoint: API endpoint (appended to base_url)
            payload: JSON payload
            headers: Additional headers
            model: Model named in the payload, for error reporting

        Returns:
            Parsed JSON response

        Raises:
            ModelUnavailableError: If the model is not found or not permitted
            APIClientError: If the API call fails after retries
            APITimeoutError: If the API call times out after retries
        """
        url = f"{self.base_url}{endpoint}" if endpoint else self.base_url

        default_headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if headers:
            default_headers.update(headers)

        self.logger.debug(
            f"Calling LLM API: {url}",
            extra={"model": model, "timeout": self.timeout}
        )

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for attempt in range(self.max_retries):
                try:
                    response = await client.post(url, headers=default_headers, json=payload)
                    response.raise_for_status()
                    try:
                        return response.json()
                    except ValueError as e:
                        raise APIClientError(
                            f"Unreadable response body from {url}: {response.text[:200]}",
                            original_error=e,
                        ) from e

                except HTTPStatusError as e:
                    await self._handle_http_error(e, attempt, url, model)

                except TimeoutException as e:
                    await self._handle_timeout_error(e, attempt, url)

                except httpx.HTTPError as e:
                    await self._handle_transport_error(e, attempt, url)

        raise APIClientError(f"Failed to call API {url} after {self.max_retries} attempts")

    async def _handle_http_error(
        self, error: HTTPStatusError, attempt: int, url: str, model: Optional[str]
    ):
        """Handle HTTP status errors."""
        status_code = error.response.status_code
        error_body = error.response.text

        self.logger.warning(
            f"API HTTP error (Attempt {attempt + 1}/{self.max_retries})",
            extra={
                "url": url,
                "status_code": status_code,
                "error_body": error_body[:500]
            }
        )

        if status_code in (403, 404) or "model_not_found" in error_body:
            raise ModelUnavailableError(
                f"Model unavailable ({status_code}): {error_body[:200]}",
                model=model or "",
                status_code=status_code,
                original_error=error,
            ) from error

        # Don't retry on client errors (4xx) unless it's rate limiting (429)
        if 400 <= status_code < 500 and status_code != 429:
            raise APIClientError(f"API Client Error {status_code}: {error_body[:200]}") from error

        if attempt < self.max_retries - 1:
            await self._wait_before_retry(attempt)
        else:
            raise APIClientError(f"API HTTP Error {status_code} after retries") from error

    async def _handle_timeout_error(self, error: TimeoutException, attempt: int, url: str):
        """Handle timeout errors."""
        self.logger.warning(
            f"API Timeout (Attempt {attempt + 1}/{self.max_retries})",
            extra={"url": url}
        )

        if attempt < self.max_retries - 1:
            await self._wait_before_retry(attempt)
        else:
            raise APITimeoutError(f"API Timeout after {self.max_retries} attempts") from error

    async def _handle_transport_error(self, error: httpx.HTTPError, attempt: int, url: str):
        """Handle connection-level errors."""
        self.logger.warning(
            f"API Transport Error (Attempt {attempt + 1}/{self.max_retries})",
            extra={"url": url, "error": str(error)}
        )

        if attempt < self.max_retries - 1:
            await self._wait_before_retry(attempt)
        else:
            raise APIClientError(f"API Error: {str(error)}", original_error=error) from error

    async def _wait_before_retry(self, attempt: int):
        """Exponential backoff wait."""
        wait_time = self.retry_delay * (2 ** attempt)
        await asyncio.sleep(wait_time)


class ChatCompletionClient(BaseLLMClient):
    """Client for an OpenAI-compatible chat-completions endpoint."""

    async def complete(
        self,
        model: str,
        messages: List[Dict[str, str]],
        temperature: float = 0.0,
    ) -> Tuple[str, Dict[str, int]]:
        """Run one chat completion.

        Returns:
            ``(content, usage)`` where usage carries prompt/completion/total
            token counts (zeros when the service omits them).

        Raises:
            ModelUnavailableError: The model does not exist or is not allowed
            APIClientError: Any other failure, including an unreadable reply
        """
        payload = {
            "model": model,
            "temperature": temperature,
            "messages": messages,
        }
        data = await self.call_api(payload=payload, model=model)

        if not isinstance(data, dict):
            raise APIClientError(f"Unexpected completion payload from {model}: {type(data).__name__}")

        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise APIClientError(f"Unexpected completion payload from {model}", original_error=e) from e
        if not isinstance(content, str):
            raise APIClientError(f"Completion content from {model} is not text")

        raw_usage = data.get("usage") or {}
        try:
            usage = {
                "prompt_tokens": int(raw_usage.get("prompt_tokens") or 0),
                "completion_tokens": int(raw_usage.get("completion_tokens") or 0),
                "total_tokens": int(raw_usage.get("total_tokens") or 0),
            }
        except (AttributeError, TypeError, ValueError) as e:
            raise APIClientError(f"Unreadable token usage from {model}: {raw_usage!r}", original_error=e) from e
        return content.strip(), usage
