# services/llm_service.py
import asyncio
import json
import logging
from typing import AsyncIterator, Optional

import requests

from config import settings
from core.exceptions import GenerationError
from core.interfaces import IGenerationClient

logger = logging.getLogger(settings.LOGGER_NAME)


class LLMService(IGenerationClient):
    """Streams completions from a local LLM API (e.g., Ollama /api/generate)."""

    def __init__(
        self,
        base_url: str = settings.LLM_BASE_URL,
        model: str = settings.LLM_MODEL_NAME,
        timeout: float = settings.LLM_TIMEOUT_SEC,
    ):
        """
        Initializes the LLMService.

        Args:
            base_url: The base URL of the LLM API.
            model: The name of the model to use.
            timeout: Bound in seconds for the connection and for each streamed line.
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    @property
    def model_id(self) -> str:
        return f"ollama-{self.model}"

    def _open_stream(self, prompt: str, system_prompt: str) -> requests.Response:
        response = requests.post(
            f"{self.base_url}/api/generate",
            json={
                "model": self.model,
                "prompt": prompt,
                "system": system_prompt,
                "stream": True,
            },
            stream=True,
            timeout=self.timeout,
        )
        response.raise_for_status()  # Raises an HTTPError for bad responses (4xx or 5xx)
        return response

    async def _bounded(self, fn, *args):
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"LLM request timed out after {self.timeout} seconds.")
            raise GenerationError("LLM request timed out") from e
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Cannot connect to LLM at {self.base_url}. Is the service running?")
            raise GenerationError("Cannot connect to LLM service") from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            logger.error(f"LLM service returned an error: {status}")
            raise GenerationError(f"LLM error: {status}") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"LLM request failed: {e}")
            raise GenerationError("LLM request failed") from e

    async def stream(self, prompt: str, system_prompt: str) -> AsyncIterator[str]:
        """
        Yield text increments as the model produces them.

        Closing the generator (aclose) releases the HTTP connection, which
        stops generation on the server side.
        """
        if not prompt or not prompt.strip():
            raise GenerationError("Empty prompt provided")

        logger.info(f"Sending prompt to LLM model '{self.model}'...")
        response = await self._bounded(self._open_stream, prompt, system_prompt)
        lines = response.iter_lines(decode_unicode=True)
        try:
            while True:
                line: Optional[str] = await self._bounded(next, lines, None)
                if line is None:
                    break
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.error(f"LLM stream returned malformed line: {line[:100]}")
                    raise GenerationError("Malformed response from LLM") from e

                if payload.get("error"):
                    logger.error(f"LLM stream error: {payload['error']}")
                    raise GenerationError("LLM returned an error")
                text = payload.get("response")
                if text:
                    yield text
                if payload.get("done"):
                    break
        finally:
            response.close()
