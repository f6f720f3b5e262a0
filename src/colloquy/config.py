from pathlib import Path

# Absolute path to the project's root directory.
# Starts from this file's location (.../src/colloquy/config.py) and goes up three levels.
ROOT_DIR = Path(__file__).resolve().parent.parent.parent

# All other important paths are built from the ROOT_DIR.
LOGS_DIR = ROOT_DIR / "logs"
DATA_DIR = ROOT_DIR / "data"
SETTINGS_FILE = ROOT_DIR / "user_settings.json"
DEFAULT_DB_PATH = DATA_DIR / "colloquy_sessions.db"

# Document store collection holding one document per chat session.
SESSIONS_COLLECTION = "chatSessions"

DEFAULT_TITLE = "New Chat"
TITLE_MAX_CHARS = 60

# History budget injected into each completion call.
DEFAULT_HISTORY_MAX_MESSAGES = 30
DEFAULT_HISTORY_MAX_TOKENS = 8000

DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_OLLAMA_MODEL = "llama3.1"
DEFAULT_OLLAMA_HOST = "http://localhost:11434"

# Generation profiles per thinking mode.
MODE_CONFIG = {
    "low": {
        "temperature": 0.4,
        "top_p": 0.9,
        "max_tokens": 2048,
    },
    "high": {
        "temperature": 0.7,
        "top_p": 0.95,
        "max_tokens": 8192,
    },
}
