"""Ollama completion provider."""
import logging
from typing import Any, Dict, Generator, List, Optional

from src.colloquy.services.user_settings_manager import get_ollama_host
from src.providers.base import CompletionProvider

logger = logging.getLogger(__name__)


class OllamaProvider(CompletionProvider):
    """
    Provider for Ollama local models.

    Ollama runs locally, so no API key is needed. The server is stateless, so
    every call carries the full assembled history.
    """

    supports_conversation_handles = False

    def __init__(self, host: Optional[str] = None, client: Optional[Any] = None) -> None:
        """
        Initialize Ollama provider.

        Args:
            host: Server URL; OLLAMA_HOST or the settings file are used when omitted.
            client: Pre-configured ollama.Client or compatible object.
        """
        self.host = host or get_ollama_host()
        self.client = client
        if self.client is None:
            self._init_client()
        logger.info("OllamaProvider initialized with host: %s", self.host)

    @property
    def provider_name(self) -> str:
        return "Ollama"

    def _init_client(self) -> None:
        """Initialize the Ollama client."""
        try:
            import ollama
        except ImportError as exc:
            logger.error(
                "Failed to import ollama. "
                "Install with: pip install ollama"
            )
            raise ImportError(
                "ollama package not installed. "
                "Install with: pip install ollama"
            ) from exc
        self.client = ollama.Client(host=self.host)
        logger.debug("Ollama client initialized successfully")

    def get_available_models(self) -> List[str]:
        """
        Return list of models installed on the Ollama server.

        Returns:
            List of model identifiers, empty when the server cannot be reached.
        """
        try:
            response = self.client.list()
        except Exception as exc:
            logger.warning("Failed to list Ollama models (is Ollama running?): %s", exc)
            return []

        models = []
        for entry in response.get("models", []) or []:
            name = entry.get("model") or entry.get("name")
            if name:
                models.append(name)

        if not models:
            logger.warning("No Ollama models found. Install models with: ollama pull <model-name>")
        return models

    @staticmethod
    def _options(config: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "temperature": config.get("temperature", 0.7),
            "top_p": config.get("top_p", 0.95),
            "num_predict": config.get("max_tokens", 2048),
        }

    def stream_chat(
        self,
        model_name: str,
        prompt: str,
        config: Dict[str, Any]
    ) -> Generator[str, None, None]:
        """
        Stream a one-shot response from Ollama.

        Yields:
            Response chunks as strings.
        """
        try:
            response = self.client.generate(
                model=model_name,
                prompt=prompt,
                stream=True,
                options=self._options(config),
            )
            for chunk in response:
                text = chunk.get("response")
                if text:
                    yield text
        except Exception as exc:
            logger.error("Ollama streaming failed for model '%s': %s", model_name, exc)
            raise

    def stream_chat_structured(
        self,
        model_name: str,
        messages: List[Dict[str, str]],
        config: Dict[str, Any]
    ) -> Generator[str, None, None]:
        """
        Stream chat with structured messages using Ollama's chat API.

        Args:
            model_name: The Ollama model identifier.
            messages: List of message dicts with 'role' and 'content'.
            config: Configuration dict with temperature, top_p, etc.
        """
        try:
            response = self.client.chat(
                model=model_name,
                messages=messages,
                stream=True,
                options=self._options(config),
            )
            for chunk in response:
                message = chunk.get("message") or {}
                content = message.get("content")
                if content:
                    yield content
        except Exception as exc:
            logger.error(
                "Ollama structured streaming failed for model '%s': %s",
                model_name,
                exc
            )
            raise
