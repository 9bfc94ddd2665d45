from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from loguru import logger
from dotenv import load_dotenv


ROOT = Path(__file__).resolve().parents[1]


# Load env from common locations early so every module sees the same values
try:
    for env_path in (ROOT / ".env", Path.cwd() / ".env"):
        if env_path.is_file():
            load_dotenv(dotenv_path=str(env_path), override=False)
            break
except Exception as e:
    logger.warning(f"dotenv load skipped: {e}")


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        logger.warning(f"Invalid float for {name}; using {default}")
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        logger.warning(f"Invalid int for {name}; using {default}")
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes")


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    return Path(raw) if raw else default


@dataclass
class Settings:
    # Storage
    data_dir: Path = ROOT / "data"
    archives_dir: Path = ROOT / "archives"
    characters_dir: Path = ROOT / "characters"
    prompts_dir: Path = ROOT / "prompts"

    # Admin gate; empty means every control action is rejected
    admin_code: str = ""

    # Chat models
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_temperature: float = 1.0
    openai_max_tokens: Optional[int] = 400
    chat_fallback_enabled: bool = False
    chat_fallback_model: str = "gpt-4o-mini"
    local_llm_base_url: Optional[str] = None
    local_llm_model: str = "llama3.1"
    llm_timeout: float = 60.0
    context_window: int = 10

    # Images
    image_model: str = "dall-e-3"
    image_size: str = "1024x1024"
    image_quality: str = "standard"
    image_cooldown: float = 600.0
    turn_image_schedule: bool = False
    gallery_enabled: bool = True
    gallery_interval: float = 300.0

    # Scheduler
    max_messages: int = 100
    initial_delay: float = 3.0
    turn_min_delay: float = 25.0
    turn_max_delay: float = 35.0
    auto_start: bool = False

    # Archives
    archive_interval: float = 3600.0
    archive_cache_ttl: float = 300.0
    github_token: Optional[str] = None
    github_owner: str = "ElizaBackrooms"
    github_repo: str = "backrooms"
    http_timeout: float = 30.0

    # Web
    keepalive_interval: float = 15.0
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:5173", "http://localhost:8501"])
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"

    @property
    def state_file(self) -> Path:
        return self.data_dir / "live-conversation.json"

    @property
    def memory_file(self) -> Path:
        return self.data_dir / "agent-memory.json"

    @property
    def gallery_dir(self) -> Path:
        return self.data_dir / "gallery"


def load_settings() -> Settings:
    """Build Settings from the process environment (.env already applied)."""
    max_tokens: Optional[int] = _env_int("OPENAI_MAX_TOKENS", 400)
    if max_tokens is not None and max_tokens <= 0:
        max_tokens = None
    origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
    defaults = Settings()
    return Settings(
        data_dir=_env_path("DATA_DIR", defaults.data_dir),
        archives_dir=_env_path("ARCHIVES_DIR", defaults.archives_dir),
        characters_dir=_env_path("CHARACTERS_DIR", defaults.characters_dir),
        prompts_dir=_env_path("PROMPTS_DIR", defaults.prompts_dir),
        admin_code=os.getenv("ADMIN_CODE", ""),
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openai_model=os.getenv("OPENAI_MODEL", defaults.openai_model),
        openai_temperature=_env_float("OPENAI_TEMPERATURE", defaults.openai_temperature),
        openai_max_tokens=max_tokens,
        chat_fallback_enabled=_env_bool("CHAT_FALLBACK_ENABLED"),
        chat_fallback_model=os.getenv("OPENAI_CHAT_FALLBACK_MODEL", defaults.chat_fallback_model),
        local_llm_base_url=os.getenv("LOCAL_LLM_BASE_URL") or None,
        local_llm_model=os.getenv("LOCAL_LLM_MODEL", defaults.local_llm_model),
        llm_timeout=_env_float("LLM_TIMEOUT_SECONDS", defaults.llm_timeout),
        image_model=os.getenv("IMAGE_MODEL", defaults.image_model),
        image_size=os.getenv("IMAGE_SIZE", defaults.image_size),
        image_quality=os.getenv("IMAGE_QUALITY", defaults.image_quality),
        image_cooldown=_env_float("IMAGE_COOLDOWN_SECONDS", defaults.image_cooldown),
        turn_image_schedule=_env_bool("TURN_IMAGE_SCHEDULE"),
        gallery_enabled=_env_bool("GALLERY_ENABLED", True),
        gallery_interval=_env_float("GALLERY_INTERVAL_SECONDS", defaults.gallery_interval),
        initial_delay=_env_float("INITIAL_DELAY", defaults.initial_delay),
        turn_min_delay=_env_float("TURN_MIN_DELAY", defaults.turn_min_delay),
        turn_max_delay=_env_float("TURN_MAX_DELAY", defaults.turn_max_delay),
        auto_start=_env_bool("AUTO_START"),
        archive_interval=_env_float("ARCHIVE_INTERVAL_SECONDS", defaults.archive_interval),
        github_token=os.getenv("GITHUB_TOKEN") or None,
        github_owner=os.getenv("GITHUB_OWNER", defaults.github_owner),
        github_repo=os.getenv("GITHUB_REPO", defaults.github_repo),
        cors_origins=origins or defaults.cors_origins,
        host=os.getenv("HOST", defaults.host),
        port=_env_int("PORT", defaults.port),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
    )
