"""Google Gemini completion provider."""
import logging
from typing import Any, Dict, Generator, List, Optional

from src.colloquy.config import DEFAULT_GEMINI_MODEL
from src.colloquy.services.user_settings_manager import get_api_key
from src.providers.base import CompletionProvider


logger = logging.getLogger(__name__)


class GeminiProvider(CompletionProvider):
    """
    Provider for Google Gemini models.

    Gemini chat objects keep the conversation server-side, so this provider
    hands them out as reusable conversation handles.

    Environment variables take precedence over the settings file:
    GEMINI_API_KEY and GOOGLE_API_KEY are checked before user_settings.json.
    """

    supports_conversation_handles = True

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[Any] = None,
    ) -> None:
        """
        Initialize Gemini provider with an API key from arguments, environment or settings.

        Args:
            api_key: Explicit API key; resolved from environment/settings when omitted.
            client: Pre-configured google.generativeai module or compatible object.
        """
        self.api_key = api_key or get_api_key("google")
        self.client = client

        if self.client is not None:
            logger.debug("GeminiProvider using injected client")
        elif self.api_key:
            logger.info("GeminiProvider initialized with API key")
            self._init_client()
        else:
            logger.warning(
                "GeminiProvider initialized without API key. "
                "Set GEMINI_API_KEY or GOOGLE_API_KEY environment variable, "
                "or configure api_keys.google in user_settings.json"
            )

    @property
    def provider_name(self) -> str:
        return "Google"

    def _init_client(self) -> None:
        """Initialize the Google Generative AI client."""
        try:
            import google.generativeai as genai
        except ImportError as exc:
            logger.error(
                "Failed to import google.generativeai. "
                "Install with: pip install google-generativeai"
            )
            raise ImportError(
                "google-generativeai package not installed. "
                "Install with: pip install google-generativeai"
            ) from exc
        genai.configure(api_key=self.api_key)
        self.client = genai
        logger.debug("Google Generative AI client configured successfully")

    def _require_client(self) -> Any:
        if not self.client:
            raise RuntimeError(
                "Gemini client not initialized. Check API key configuration."
            )
        return self.client

    def get_available_models(self) -> List[str]:
        """
        Return list of available Gemini model names.

        Returns:
            List of model identifiers.
        """
        if not self.client:
            logger.warning("Cannot list models: Gemini client not initialized")
            return []

        return [
            DEFAULT_GEMINI_MODEL,
            "gemini-2.5-pro",
            "gemini-2.0-flash",
            "gemini-1.5-pro",
            "gemini-1.5-flash",
        ]

    @staticmethod
    def _generation_config(config: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "temperature": config.get("temperature", 0.7),
            "top_p": config.get("top_p", 0.95),
            "max_output_tokens": config.get("max_tokens", 8192),
        }

    @staticmethod
    def to_gemini_history(history: List[Dict[str, str]]) -> List[Dict[str, Any]]:
        """
        Convert {role, content} turns into Gemini contents.

        Gemini requires a conversation to open with a user turn, so leading
        assistant turns are skipped.
        """
        first_user_index = next(
            (index for index, turn in enumerate(history) if turn.get("role") == "user"),
            len(history),
        )
        if first_user_index > 0:
            logger.debug("Skipped %d leading assistant message(s) from history", first_user_index)

        contents = []
        for turn in history[first_user_index:]:
            role = "user" if turn.get("role") == "user" else "model"
            contents.append({"role": role, "parts": [turn.get("content", "")]})
        return contents

    @staticmethod
    def _iter_text(response: Any) -> Generator[str, None, None]:
        for chunk in response:
            text = getattr(chunk, "text", None)
            if text:
                yield text

    def stream_chat(
        self,
        model_name: str,
        prompt: str,
        config: Dict[str, Any]
    ) -> Generator[str, None, None]:
        """
        Stream a one-shot response from Gemini.

        Raises:
            RuntimeError: If client is not initialized.
        """
        client = self._require_client()
        try:
            model = client.GenerativeModel(
                model_name=model_name,
                generation_config=self._generation_config(config),
            )
            response = model.generate_content(prompt, stream=True)
            yield from self._iter_text(response)
        except Exception as exc:
            logger.error("Gemini streaming failed for model '%s': %s", model_name, exc)
            raise

    def stream_chat_structured(
        self,
        model_name: str,
        messages: List[Dict[str, str]],
        config: Dict[str, Any]
    ) -> Generator[str, None, None]:
        """
        Stream a reply for a full message list without keeping server-side state.

        Args:
            model_name: The Gemini model identifier.
            messages: List of message dicts with 'role' and 'content', ending with the new user turn.
            config: Configuration dict with temperature, top_p, etc.
        """
        client = self._require_client()
        try:
            model = client.GenerativeModel(
                model_name=model_name,
                generation_config=self._generation_config(config),
            )
            response = model.generate_content(self.to_gemini_history(messages), stream=True)
            yield from self._iter_text(response)
        except Exception as exc:
            logger.error(
                "Gemini structured streaming failed for model '%s': %s",
                model_name,
                exc
            )
            raise

    def start_conversation(
        self,
        model_name: str,
        history: List[Dict[str, str]],
        config: Dict[str, Any]
    ) -> Any:
        """Open a Gemini chat seeded with prior turns; the chat object is the handle."""
        client = self._require_client()
        contents = self.to_gemini_history(history)
        model = client.GenerativeModel(
            model_name=model_name,
            generation_config=self._generation_config(config),
        )
        logger.debug("Creating Gemini chat with %d message(s) in history", len(contents))
        return model.start_chat(history=contents)

    def stream_conversation(self, handle: Any, message: str) -> Generator[str, None, None]:
        try:
            response = handle.send_message(message, stream=True)
            yield from self._iter_text(response)
        except Exception as exc:
            logger.error("Gemini chat message failed: %s", exc)
            raise
