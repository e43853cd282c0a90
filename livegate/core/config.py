"""
LiveGate — Configuration

Centralised settings from environment variables.
Backoff timings, assistant notices and cache locations are read here once at import.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv
import certifi

os.environ.setdefault("SSL_CERT_FILE", certifi.where())

load_dotenv()


# ---------------------------------------------------------------------------
# Remote API
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ApiConfig:
    base_url: str = os.getenv("LIVEGATE_API_BASE_URL", "http://localhost:3000")
    # Seconds for a single REST call (connect + read)
    request_timeout: float = float(os.getenv("LIVEGATE_REQUEST_TIMEOUT", "15"))


# ---------------------------------------------------------------------------
# Push-channel reconnect tunables
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StreamConfig:
    """Backoff shape shared by the event streams and the assistant socket."""
    backoff_base: float = 0.75
    # Growth after a clean close vs. after an HTTP/transport error
    clean_close_multiplier: float = 1.5
    error_multiplier: float = 1.6
    backoff_cap: float = 8.0
    # Uniform jitter in [0, jitter_max)
    jitter_max: float = 0.25
    # Pinned delay while the context is backgrounded
    hidden_interval: float = 15.0
    # Connect timeout for opening a push channel; reads never time out
    connect_timeout: float = 10.0


# ---------------------------------------------------------------------------
# Assistant
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AssistantConfig:
    max_reconnect_attempts: int = 5
    # Bounded conversation history kept in memory
    max_messages: int = 200
    # Default 'modalities' for response.create
    modalities: tuple[str, ...] = ("text",)
    limit_message: str = "AI limit reached for this session."
    error_message: str = "AI encountered an error. AI has been disabled."
    scope_default_message: str = "Out of scope. Try rephrasing within the session scope."
    audio_warning: str = "Assistant audio output is not supported here; showing text only."
    lost_message: str = "AI connection lost (code {code}). Reconnect to try again."


# ---------------------------------------------------------------------------
# Local cache
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StorageConfig:
    prefix: str = os.getenv("LIVEGATE_STORAGE_PREFIX", "livegate")
    cache_path: str = os.getenv(
        "LIVEGATE_CACHE_PATH",
        os.path.join(os.path.expanduser("~"), ".livegate", "cache.json"),
    )


# Singletons
api_cfg = ApiConfig()
stream_cfg = StreamConfig()
assistant_cfg = AssistantConfig()
storage_cfg = StorageConfig()
