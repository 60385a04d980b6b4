import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


class Config:
    # API Keys
    # Environment-level default credential, used when no stored key is healthy.
    GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY")
    GEMINI_MODEL = os.getenv("OLORO_GEMINI_MODEL", "gemini-2.5-flash")

    # Storage
    DATA_DIR = Path(os.getenv("OLORO_DATA_DIR", "data"))
    DB_PATH = Path(os.getenv("OLORO_DB_PATH", "")) if os.getenv("OLORO_DB_PATH") else DATA_DIR / "oloro.db"

    # Key rotation
    KEY_ERROR_THRESHOLD = _env_int("OLORO_KEY_ERROR_THRESHOLD", 3)
    # ~$0.10 per 1M tokens (Flash blended rate)
    COST_PER_MILLION_TOKENS = _env_float("OLORO_COST_PER_MILLION_TOKENS", 0.10)
    KEY_SELECTION = os.getenv("OLORO_KEY_SELECTION", "first").lower()  # first | lru

    # Record sync
    SYNC_TIMEOUT_SECONDS = _env_float("OLORO_SYNC_TIMEOUT_SEC", 30.0)
    SYNC_RETRY_DELAY_SECONDS = _env_float("OLORO_SYNC_RETRY_DELAY_SEC", 60.0)
    SYNC_ENDPOINT = os.getenv("OLORO_SYNC_ENDPOINT", "")
    SYNC_TOKEN = os.getenv("OLORO_SYNC_TOKEN", "")

    # Connectivity probing (off by default: the browser reports online/offline itself)
    CONNECTIVITY_PROBE_ENABLED = os.getenv("OLORO_CONNECTIVITY_PROBE", "0") in ("1", "true", "True")
    CONNECTIVITY_PROBE_URL = os.getenv("OLORO_CONNECTIVITY_PROBE_URL", "https://www.google.com/generate_204")
    CONNECTIVITY_PROBE_INTERVAL_SECONDS = _env_float("OLORO_CONNECTIVITY_PROBE_INTERVAL_SEC", 15.0)

    # Local API server
    WEB_HOST = os.getenv("OLORO_WEB_HOST", "127.0.0.1")
    WEB_PORT = _env_int("OLORO_WEB_PORT", 8765)

    @classmethod
    def env_fallback_key(cls) -> str:
        return (cls.GEMINI_API_KEY or "").strip()

    @classmethod
    def set_gemini_api_key(cls, value: str) -> None:
        cls.GEMINI_API_KEY = value.strip()
        os.environ["GEMINI_API_KEY"] = cls.GEMINI_API_KEY

    @classmethod
    def set_gemini_model(cls, model: str) -> None:
        cls.GEMINI_MODEL = model.strip()
        os.environ["OLORO_GEMINI_MODEL"] = cls.GEMINI_MODEL

    @classmethod
    def set_key_selection(cls, mode: str) -> None:
        cls.KEY_SELECTION = mode.lower().strip()
        os.environ["OLORO_KEY_SELECTION"] = cls.KEY_SELECTION

    @classmethod
    def persist_to_env_file(cls, path: str = ".env") -> None:
        """Persist current settings and the fallback API key to the .env file."""
        lines = []
        def add(k, v): lines.append(f"{k}={v}")

        add("GEMINI_API_KEY", cls.GEMINI_API_KEY or "")
        add("OLORO_GEMINI_MODEL", cls.GEMINI_MODEL)
        add("OLORO_DATA_DIR", str(cls.DATA_DIR))
        add("OLORO_KEY_ERROR_THRESHOLD", str(cls.KEY_ERROR_THRESHOLD))
        add("OLORO_COST_PER_MILLION_TOKENS", str(cls.COST_PER_MILLION_TOKENS))
        add("OLORO_KEY_SELECTION", cls.KEY_SELECTION)
        add("OLORO_SYNC_TIMEOUT_SEC", str(cls.SYNC_TIMEOUT_SECONDS))
        add("OLORO_SYNC_RETRY_DELAY_SEC", str(cls.SYNC_RETRY_DELAY_SECONDS))
        add("OLORO_SYNC_ENDPOINT", cls.SYNC_ENDPOINT or "")
        add("OLORO_SYNC_TOKEN", cls.SYNC_TOKEN or "")
        add("OLORO_WEB_HOST", cls.WEB_HOST)
        add("OLORO_WEB_PORT", str(cls.WEB_PORT))

        with open(path, "w", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")
