import logging
from pathlib import Path
from typing import Any, Dict, Optional

from src.colloquy.app.event_bus import EventBus
from src.colloquy.services.completion_gateway import CompletionGateway
from src.colloquy.services.document_store import DocumentStore, SQLiteDocumentStore
from src.colloquy.services.history_assembler import HistoryAssembler
from src.colloquy.services.logging_service import LoggingService
from src.colloquy.services.session_cache import SessionCache
from src.colloquy.services.session_manager import SessionManager
from src.colloquy.services.session_store import SessionStore
from src.colloquy.services.user_settings_manager import (
    get_api_key,
    get_ollama_host,
    load_user_settings,
    normalize_settings,
)
from src.providers.base import CompletionProvider
from src.providers.gemini_provider import GeminiProvider
from src.providers.ollama_provider import OllamaProvider

logger = logging.getLogger(__name__)


def create_provider(settings: Dict[str, Any]) -> CompletionProvider:
    """
    Build the completion provider selected in the user settings.

    Args:
        settings: Normalized user settings.

    Returns:
        A configured provider instance.
    """
    provider = settings.get("provider")
    if provider == "ollama":
        return OllamaProvider(host=get_ollama_host(settings))
    if provider == "gemini":
        return GeminiProvider(api_key=get_api_key("google", settings))
    raise ValueError(f"Unsupported completion provider: {provider!r}")


class ColloquyApp:
    """
    Wires the session core together: settings, document store, session cache,
    history assembler, completion provider, gateway and session manager.

    Usable as a context manager; leaving the block shuts the core down.
    """

    def __init__(
        self,
        settings: Optional[Dict[str, Any]] = None,
        provider: Optional[CompletionProvider] = None,
        document_store: Optional[DocumentStore] = None,
        event_bus: Optional[EventBus] = None,
        configure_logging: bool = True,
    ):
        """
        Initializes the ColloquyApp.

        Args:
            settings: Settings overrides; the settings file is read when omitted.
            provider: Pre-built provider; otherwise created from the settings.
            document_store: Pre-built store; otherwise SQLite at settings['database_path'].
            event_bus: Shared bus; a new one is created when omitted.
            configure_logging: Install the console and rotating file handlers.
        """
        if configure_logging:
            LoggingService.setup_logging()

        logger.info("Initializing ColloquyApp...")
        self.settings = normalize_settings(settings) if settings is not None else load_user_settings()
        self.event_bus = event_bus or EventBus()

        self.document_store = document_store or SQLiteDocumentStore(Path(self.settings["database_path"]))
        self.session_store = SessionStore(self.document_store)
        self.session_cache = SessionCache()

        history = self.settings["history"]
        self.history_assembler = HistoryAssembler(
            max_messages=history["max_messages"],
            max_tokens=history["max_tokens"],
        )

        self.provider = provider or create_provider(self.settings)
        self.completion_gateway = CompletionGateway(
            self.provider,
            self.settings["model"],
            self.session_store,
            self.history_assembler,
            self.session_cache,
        )
        self.session_manager = SessionManager(
            self.session_store,
            self.session_cache,
            self.history_assembler,
            gateway=self.completion_gateway,
            event_bus=self.event_bus,
        )
        logger.info(
            "ColloquyApp initialized with provider %s (model %s).",
            self.provider.provider_name,
            self.settings["model"],
        )

    def shutdown(self) -> None:
        """Drop cached provider handles and close the document store."""
        logger.info("Shutting down ColloquyApp...")
        self.session_manager.close()

    def __enter__(self) -> "ColloquyApp":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
