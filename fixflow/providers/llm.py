"""OpenAI-compatible chat client used by the model-backed strategies (vLLM, LM Studio, etc.)."""

from collections.abc import Sequence
from typing import Any

import httpx
import structlog

from fixflow.exceptions import AgentError, ExternalServiceError, ProviderConnectionError, ResponseParseError
from fixflow.utils.json_parser import extract_json_object

log = structlog.get_logger(__name__)


class ChatClient:
    """Client for OpenAI-compatible chat completions servers.

    Supports vLLM, LM Studio, text-generation-webui, OpenRouter and other
    servers that implement the OpenAI API. Images are sent as
    ``image_url`` content parts, so vision models can read screenshots.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000/v1",
        model: str = "default",
        api_key: str | None = None,
        timeout: float = 300.0,
        temperature: float = 0.3,
        max_tokens: int = 4096,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize chat client.

        Args:
            base_url: API base URL (e.g., http://localhost:8000/v1)
            model: Model identifier to use
            api_key: Optional API key for authentication
            timeout: Request timeout in seconds (default: 300)
            temperature: Default sampling temperature
            max_tokens: Default completion limit
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens

        # Build headers
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self.client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    async def connect(self) -> None:
        """Verify server connection and model availability."""
        try:
            response = await self.client.get(f"{self.base_url}/models")
            response.raise_for_status()
        except httpx.ConnectError as e:
            log.error("chat_server_not_running", url=self.base_url)
            raise ProviderConnectionError(
                "Chat completions server not reachable", provider_url=self.base_url, model=self.model
            ) from e
        except httpx.HTTPStatusError as e:
            # Some servers do not implement /models
            if e.response.status_code == 404:
                log.warning("models_endpoint_not_available", url=self.base_url)
                return
            raise ExternalServiceError(
                "Model listing failed",
                status_code=e.response.status_code,
                response_text=e.response.text,
            ) from e

        model_ids = [m.get("id", "") for m in response.json().get("data", [])]
        if self.model != "default" and model_ids and not any(self.model in mid for mid in model_ids):
            log.warning("model_not_found", model=self.model, available=model_ids)
        else:
            log.info("chat_client_ready", model=self.model)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def complete(
        self,
        prompt: str,
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        images: Sequence[str] = (),
    ) -> str:
        """Run one chat completion and return the reply text.

        Args:
            prompt: User message
            system: Optional system message
            temperature: Override of the default temperature
            max_tokens: Override of the default completion limit
            images: Image URLs or base64 data to attach to the prompt

        Returns:
            The assistant's reply

        Raises:
            ProviderConnectionError: If the server cannot be reached
            AgentError: If the request times out
            ExternalServiceError: If the server returns an error status
            ResponseParseError: If the reply has no content
        """
        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": self._user_content(prompt, images)})

        body = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": self.max_tokens if max_tokens is None else max_tokens,
        }

        log.info("chat_completion_request", model=self.model, images=len(images), prompt_length=len(prompt))

        try:
            response = await self.client.post(f"{self.base_url}/chat/completions", json=body)
            response.raise_for_status()
        except httpx.ConnectError as e:
            raise ProviderConnectionError(
                "Chat completions server not reachable", provider_url=self.base_url, model=self.model
            ) from e
        except httpx.TimeoutException as e:
            raise AgentError(
                f"Chat completion timed out after {self.timeout}s", model=self.model, retryable=True
            ) from e
        except httpx.HTTPStatusError as e:
            error_detail = e.response.text
            try:
                error_detail = e.response.json().get("error", {}).get("message", error_detail)
            except (ValueError, AttributeError):
                pass
            log.error("chat_completion_failed", status_code=e.response.status_code, error=error_detail)
            raise ExternalServiceError(
                f"Chat completion failed: {error_detail}",
                status_code=e.response.status_code,
                response_text=e.response.text,
            ) from e

        result = response.json()
        choices = result.get("choices", [])
        content = choices[0].get("message", {}).get("content") if choices else None
        if not content:
            raise ResponseParseError("No content returned from chat completions API", model=self.model)

        usage = result.get("usage", {})
        log.info(
            "chat_completion_received",
            model=self.model,
            output_length=len(content),
            tokens=usage.get("total_tokens", usage.get("completion_tokens", 0)),
        )
        return content

    async def complete_json(
        self,
        prompt: str,
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        images: Sequence[str] = (),
    ) -> dict[str, Any]:
        """Run a completion and parse the reply as a JSON object."""
        reply = await self.complete(prompt, system, temperature, max_tokens, images)
        return extract_json_object(reply)

    @staticmethod
    def _user_content(prompt: str, images: Sequence[str]) -> str | list[dict[str, Any]]:
        if not images:
            return prompt
        parts: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
        for image in images:
            url = image if image.startswith(("http://", "https://", "data:")) else f"data:image/png;base64,{image}"
            parts.append({"type": "image_url", "image_url": {"url": url}})
        return parts
