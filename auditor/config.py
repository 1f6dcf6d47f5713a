import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    output_dir: Path = Path("outputs")
    results_dir: Path = Path("outputs/results")
    upload_dir: Path = Path("outputs/uploads")
    cache_dir: Path = Path(".cache")
    cache_enabled: bool = True
    cache_max_age_hours: float = 168.0

    llm_provider: str = "openai"
    openai_model: str = "gpt-4o"
    openai_timeout: int = 120
    ollama_url: str = "http://localhost:11434"
    ollama_model: str = "llava"
    ollama_timeout: int = 120

    transcriber: str = "assemblyai"
    assemblyai_api_key: str = field(default="", repr=False)
    transcript_language: str = "es"
    transcript_poll_seconds: float = 3.0
    transcript_poll_max_seconds: float = 15.0
    transcript_timeout_seconds: float = 720.0
    whisper_model: str = "small"
    whisper_device: str = "cpu"
    whisper_compute: str = ""

    vision_max_attempts: int = 3
    vision_retry_delay: float = 1.0
    scorer_max_attempts: int = 2
    verbal_window: int = 40
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        for name in ("vision_max_attempts", "scorer_max_attempts"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name.upper()} must be at least 1")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        if env is None:
            load_dotenv()
            env = os.environ
        output_dir = Path(env.get("OUTPUT_DIR", "outputs"))
        return cls(
            output_dir=output_dir,
            results_dir=Path(env.get("RESULTS_DIR", str(output_dir / "results"))),
            upload_dir=Path(env.get("UPLOAD_DIR", str(output_dir / "uploads"))),
            cache_dir=Path(env.get("CACHE_DIR", ".cache")),
            cache_enabled=_flag(env.get("CACHE_ENABLED"), True),
            cache_max_age_hours=float(env.get("CACHE_MAX_AGE_HOURS", "168")),
            llm_provider=env.get("LLM_PROVIDER", "openai").strip().lower(),
            openai_model=env.get("OPENAI_MODEL", "gpt-4o"),
            openai_timeout=int(env.get("OPENAI_TIMEOUT", "120")),
            ollama_url=env.get("OLLAMA_URL", "http://localhost:11434"),
            ollama_model=env.get("OLLAMA_MODEL", "llava"),
            ollama_timeout=int(env.get("OLLAMA_TIMEOUT", "120")),
            transcriber=env.get("TRANSCRIBER", "assemblyai").strip().lower(),
            assemblyai_api_key=env.get("ASSEMBLYAI_API_KEY", ""),
            transcript_language=env.get("TRANSCRIPT_LANGUAGE", "es"),
            transcript_poll_seconds=float(env.get("TRANSCRIPT_POLL_SECONDS", "3")),
            transcript_poll_max_seconds=float(env.get("TRANSCRIPT_POLL_MAX_SECONDS", "15")),
            transcript_timeout_seconds=float(env.get("TRANSCRIPT_TIMEOUT_SECONDS", "720")),
            whisper_model=env.get("WHISPER_MODEL", "small"),
            whisper_device=env.get("WHISPER_DEVICE", "cpu").lower(),
            whisper_compute=env.get("WHISPER_COMPUTE", "").strip(),
            vision_max_attempts=int(env.get("VISION_MAX_ATTEMPTS", "3")),
            vision_retry_delay=float(env.get("VISION_RETRY_DELAY", "1.0")),
            scorer_max_attempts=int(env.get("SCORER_MAX_ATTEMPTS", "2")),
            verbal_window=int(env.get("VERBAL_WINDOW", "40")),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )
