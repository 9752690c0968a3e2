"""
Vision/LLM provider adapters.

Every provider implements the same small interface so the rest of the
pipeline never depends on a concrete backend:

- analyze_images(images, prompt): send base64 images plus a prompt, get text
- generate_text(prompt): text-only completion
- is_available(): cheap health check

Two HTTP backends are included, both on ``requests``:
- OllamaProvider: local Ollama server (/api/chat, /api/tags)
- OpenAICompatibleProvider: any /v1/chat/completions endpoint
"""

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Optional, TYPE_CHECKING

import requests

from .errors import AnalysisParseError, ProviderError, ValidationError

if TYPE_CHECKING:
    from .config import AIConfig

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_HOST = "http://localhost:11434"


class VisionProvider(ABC):
    """Interface for a backend that can read screenshots and write text."""

    name = "base"

    @abstractmethod
    def analyze_images(self, images: list[str], prompt: str) -> str:
        """Send base64-encoded images with a prompt and return the response text.

        Raises:
            ProviderError: If the call fails.
        """

    @abstractmethod
    def generate_text(self, prompt: str) -> str:
        """Text-only completion.

        Raises:
            ProviderError: If the call fails.
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Return True if the backend answers and has the configured model."""


class OllamaProvider(VisionProvider):
    """Ollama over its HTTP API.

    Attributes:
        model: Ollama model name (must be vision-capable for analyze_images)
        host: Base URL of the Ollama server
        timeout: Request timeout in seconds
    """

    name = "ollama"

    def __init__(self, model: str, host: str = DEFAULT_OLLAMA_HOST, timeout: int = 120):
        self.model = model
        self.host = host.rstrip('/')
        self.timeout = timeout

    def _call_api(self, prompt: str, images: list[str] = None) -> str:
        """
        POST one chat message to /api/chat.

        Raises:
            ProviderError: On timeout, connection failure or HTTP error.
        """
        message = {"role": "user", "content": prompt}
        if images:
            message["images"] = images

        payload = {
            "model": self.model,
            "messages": [message],
            "stream": False,
            "keep_alive": "1h",
        }

        start_time = time.time()
        try:
            response = requests.post(f"{self.host}/api/chat", json=payload, timeout=self.timeout)
            response.raise_for_status()
            logger.info(f"Ollama inference completed in {time.time() - start_time:.2f}s")
            return response.json()["message"]["content"]
        except requests.exceptions.Timeout as e:
            logger.error(f"Ollama API timed out after {time.time() - start_time:.2f}s")
            raise ProviderError(f"Ollama API timed out after {self.timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Cannot connect to Ollama at {self.host}: {e}")
            raise ProviderError(f"Cannot connect to Ollama at {self.host}") from e
        except requests.exceptions.HTTPError as e:
            logger.error(f"Ollama API error: {e}")
            raise ProviderError(f"Ollama API error: {e}") from e
        except (KeyError, ValueError) as e:
            raise ProviderError(f"Unexpected Ollama response: {e}") from e

    def analyze_images(self, images: list[str], prompt: str) -> str:
        return self._call_api(prompt, images)

    def generate_text(self, prompt: str) -> str:
        return self._call_api(prompt)

    def is_available(self) -> bool:
        try:
            response = requests.get(f"{self.host}/api/tags", timeout=5)
            response.raise_for_status()
            names = [m.get("name", "") for m in response.json().get("models", [])]
        except requests.exceptions.ConnectionError:
            logger.warning(f"Cannot connect to Ollama at {self.host}")
            return False
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"Ollama check failed: {e}")
            return False

        model_base = self.model.split(":")[0]
        if not any(n.startswith(model_base) for n in names):
            logger.warning(f"Model {self.model} not found in Ollama")
            return False
        return True


class OpenAICompatibleProvider(VisionProvider):
    """Any server implementing the OpenAI chat completions API."""

    name = "openai"

    def __init__(self, model: str, host: str, api_key: str = "", timeout: int = 120):
        self.model = model
        self.host = host.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _call_api(self, content) -> str:
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": content}],
        }
        try:
            response = requests.post(
                f"{self.host}/v1/chat/completions",
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()["choices"][0]["message"]["content"]
        except requests.exceptions.Timeout as e:
            raise ProviderError(f"{self.host} timed out after {self.timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            raise ProviderError(f"Cannot connect to {self.host}") from e
        except requests.exceptions.HTTPError as e:
            raise ProviderError(f"Provider API error: {e}") from e
        except (KeyError, IndexError, ValueError) as e:
            raise ProviderError(f"Unexpected provider response: {e}") from e

    def analyze_images(self, images: list[str], prompt: str) -> str:
        content = [{"type": "text", "text": prompt}]
        for image in images:
            content.append({
                "type": "image_url",
                "image_url": {"url": f"data:image/jpeg;base64,{image}"},
            })
        return self._call_api(content)

    def generate_text(self, prompt: str) -> str:
        return self._call_api(prompt)

    def is_available(self) -> bool:
        try:
            response = requests.get(f"{self.host}/v1/models", headers=self._headers(), timeout=5)
            response.raise_for_status()
            return True
        except requests.exceptions.RequestException as e:
            logger.warning(f"Provider check failed for {self.host}: {e}")
            return False


def create_provider(ai: "AIConfig") -> VisionProvider:
    """Build the provider named by the ai config section.

    Raises:
        ValidationError: For an unknown provider name.
    """
    if ai.provider == "ollama":
        return OllamaProvider(ai.model, ai.host, ai.timeout)
    if ai.provider == "openai":
        return OpenAICompatibleProvider(ai.model, ai.host, ai.api_key, ai.timeout)
    raise ValidationError(f"Unknown AI provider: {ai.provider}")


_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.S)


def parse_analysis_response(text: str) -> dict:
    """Extract the JSON object from a model response.

    Tolerates markdown code fences and prose around the object.

    Raises:
        AnalysisParseError: If no JSON object can be decoded.
    """
    if not text or not text.strip():
        raise AnalysisParseError("Empty response")

    candidates = [m.group(1) for m in _FENCE.finditer(text)]
    first, last = text.find('{'), text.rfind('}')
    if first != -1 and last > first:
        candidates.append(text[first:last + 1])
    candidates.append(text)

    error: Optional[Exception] = None
    for candidate in candidates:
        try:
            value = json.loads(candidate.strip())
        except ValueError as e:
            error = e
            continue
        if isinstance(value, dict):
            return value
    raise AnalysisParseError(f"No JSON object in response: {error}")
