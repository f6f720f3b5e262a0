from abc import ABC, abstractmethod
from typing import Any, Dict, Generator, List


class CompletionProvider(ABC):
    """
    Abstract Base Class for all AI completion providers.
    This defines the contract that all concrete provider implementations must follow.
    """

    # Providers that keep chat state server-side return reusable handles from
    # start_conversation(); the others receive the full history on every call.
    supports_conversation_handles: bool = False

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """The official name of the provider (e.g., 'Google', 'Ollama')."""
        pass

    @abstractmethod
    def get_available_models(self) -> List[str]:
        """
        Returns a list of available model names for this provider.

        Returns:
            A list of strings, where each string is a model identifier.
        """
        pass

    @abstractmethod
    def stream_chat(
        self,
        model_name: str,
        prompt: str,
        config: Dict[str, Any]
    ) -> Generator[str, None, None]:
        """
        Streams a one-shot response for a single prompt without history.

        Args:
            model_name: The specific model to use for the chat.
            prompt: The user's input prompt.
            config: A dictionary containing generation parameters like 'temperature' and 'top_p'.

        Yields:
            A stream of strings, where each string is a chunk of the response.
        """
        pass

    def stream_chat_structured(
        self,
        model_name: str,
        messages: List[Dict[str, str]],
        config: Dict[str, Any]
    ) -> Generator[str, None, None]:
        """
        Streams a chat response using structured messages with roles.
        Default implementation falls back to concatenated prompt format.

        Args:
            model_name: The specific model to use for the chat.
            messages: List of message dictionaries with 'role' and 'content' keys,
                      oldest first, ending with the new user message.
            config: A dictionary containing generation parameters.

        Yields:
            A stream of strings, where each string is a chunk of the response.
        """
        prompt_parts = []
        for message in messages:
            role_prefix = f"{message['role'].capitalize()}: " if message['role'] != 'system' else ""
            prompt_parts.append(f"{role_prefix}{message['content']}")

        fallback_prompt = "\n\n".join(prompt_parts)
        return self.stream_chat(model_name, fallback_prompt, config)

    def start_conversation(
        self,
        model_name: str,
        history: List[Dict[str, str]],
        config: Dict[str, Any]
    ) -> Any:
        """
        Create a provider-side conversation seeded with prior turns.

        Returns:
            An opaque handle accepted by stream_conversation().
        """
        raise NotImplementedError(f"{self.provider_name} does not keep conversation state.")

    def stream_conversation(self, handle: Any, message: str) -> Generator[str, None, None]:
        """
        Send a new user message on an existing provider-side conversation.

        Yields:
            Response chunks as strings.
        """
        raise NotImplementedError(f"{self.provider_name} does not keep conversation state.")
