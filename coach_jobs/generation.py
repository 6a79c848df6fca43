"""HTTP client for the text generation service (OpenAI-compatible chat API)."""

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional

import aiohttp

from coach_jobs.config import CoachJobsConfig
from coach_jobs.errors import CollaboratorError, ConfigurationError, RemoteHttpError


class GenerationClient:
    """Calls a chat completions endpoint and returns the JSON text it produced."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 60.0,
        temperature: Optional[float] = 0.85,
        max_tokens: int = 1200,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the generation client.

        Args:
            api_key: Bearer credential for the generation service
            model: Model name sent with each request
            base_url: API root, e.g. "https://api.openai.com/v1"
            timeout: Total request timeout in seconds, independent of job leases
            temperature: Sampling temperature, or None to omit it
            max_tokens: Completion token limit
            logger: Logger instance
        """
        if not api_key:
            raise ConfigurationError("Generation API key is not set")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(
        cls, config: CoachJobsConfig, logger: Optional[logging.Logger] = None
    ) -> "GenerationClient":
        return cls(
            api_key=config.openai_api_key,
            model=config.openai_model,
            base_url=config.openai_base_url,
            timeout=config.generation_timeout_seconds,
            logger=logger,
        )

    async def generate(self, instructions: str, payload: Dict[str, Any]) -> str:
        """
        Request a JSON object completion.

        Returns:
            The raw completion text

        Raises:
            RemoteHttpError: If the service answers with an error status
            CollaboratorError: On network errors or timeouts
        """
        body: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": instructions},
                {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
            ],
        }
        if self.temperature is not None:
            body["temperature"] = self.temperature

        started = time.monotonic()
        try:
            data = await self._post_completion(body)
        except RemoteHttpError as e:
            # Some models reject sampling knobs; retry once without them
            if e.status_code == 400 and "temperature" in (e.response_body or "").lower():
                self.logger.info(f"Model {self.model} rejected temperature, retrying without it")
                body.pop("temperature", None)
                data = await self._post_completion(body)
            else:
                raise

        usage = data.get("usage") or {}
        self.logger.debug(
            f"Generation call model={self.model} "
            f"latency_ms={int((time.monotonic() - started) * 1000)} "
            f"prompt_tokens={usage.get('prompt_tokens')} "
            f"completion_tokens={usage.get('completion_tokens')}"
        )

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise CollaboratorError("Generation response has no message content") from e
        return (content or "").strip()

    async def _post_completion(self, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.post(url, json=body, headers=headers) as resp:
                    response_body = await resp.text()

                    if resp.status >= 400:
                        raise RemoteHttpError(
                            status_code=resp.status,
                            message=f"Generation request failed: {response_body[:500]}",
                            response_body=response_body,
                        )

                    try:
                        return json.loads(response_body)
                    except json.JSONDecodeError as e:
                        raise CollaboratorError(
                            "Generation service returned a non-JSON body"
                        ) from e

            except aiohttp.ClientError as e:
                raise CollaboratorError(f"Network error: {str(e)}") from e
            except asyncio.TimeoutError as e:
                raise CollaboratorError(
                    f"Generation request timed out after {self.timeout.total}s"
                ) from e
