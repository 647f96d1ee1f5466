import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from openai import AzureOpenAI, OpenAI
from pydantic import BaseModel, Field

from .models import TextColor

# Load environment variables from .env file
load_dotenv()

DEFAULT_API_BASE = "http://localhost:8080/v1"
DEFAULT_MODEL = "default_model"
DEFAULT_SOURCE_LANG = "fr"
DEFAULT_TARGET_LANG = "en"
DEFAULT_TEXT_COLOR = "dark_red"
DEFAULT_AZURE_API_VERSION = "2024-02-01"

# Latin-script languages covered by the bundled base-14 fonts
BUNDLED_FONT_LANGUAGES = ("en", "fr", "de", "es", "it", "pt")

LANGUAGE_NAMES = {
    "en": "English",
    "fr": "French",
    "de": "German",
    "es": "Spanish",
    "it": "Italian",
    "pt": "Portuguese",
    "nl": "Dutch",
    "ru": "Russian",
    "zh-CN": "Simplified Chinese",
    "zh-TW": "Traditional Chinese",
    "ja": "Japanese",
    "ko": "Korean",
    "ar": "Arabic",
    "hi": "Hindi",
    "th": "Thai",
    "vi": "Vietnamese",
}


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code, "the specified language")


def default_cache_path() -> Path:
    """$XDG_CACHE_HOME/pdftrans/cache.sqlite3, falling back to ~/.cache."""
    base = os.getenv("XDG_CACHE_HOME")
    root = Path(base) if base else Path.home() / ".cache"
    return root / "pdftrans" / "cache.sqlite3"


class MergeSettings(BaseModel):
    """Thresholds for grouping glyph runs into blocks, as multiples of the line height."""
    gap_factor: float = Field(0.6, gt=0)
    contiguity_factor: float = Field(1.0, ge=0)
    size_tolerance: float = Field(0.2, ge=0)


class FitSettings(BaseModel):
    max_shrink_step: float = Field(0.1, gt=0, lt=1)
    min_font_size: float = Field(5.0, gt=0)
    max_font_size: float = Field(72.0, gt=0)
    line_spacing: float = Field(1.2, ge=1)
    mask_padding: float = Field(1.0, ge=0)


class Settings(BaseModel):
    api_base: str = DEFAULT_API_BASE
    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    azure_endpoint: Optional[str] = None
    azure_api_key: Optional[str] = None
    azure_deployment: Optional[str] = None
    azure_api_version: str = DEFAULT_AZURE_API_VERSION

    source_lang: str = DEFAULT_SOURCE_LANG
    target_lang: str = DEFAULT_TARGET_LANG
    text_color: str = DEFAULT_TEXT_COLOR

    cache_path: str = Field(default_factory=lambda: str(default_cache_path()))
    memory_cache_entries: int = 1000
    memory_cache_ttl: float = 0.0
    max_concurrent_requests: int = 4
    request_timeout: float = 60.0
    retry_count: int = 3
    retry_delay: float = 1.0

    font_path: Optional[str] = None
    font_languages: List[str] = Field(default_factory=list)

    merge: MergeSettings = Field(default_factory=MergeSettings)
    fit: FitSettings = Field(default_factory=FitSettings)

    @property
    def uses_azure(self) -> bool:
        return bool(self.azure_endpoint or self.azure_deployment)

    @property
    def model_identifier(self) -> str:
        return (self.azure_deployment or self.model) if self.uses_azure else self.model

    @property
    def supported_target_languages(self) -> List[str]:
        return list(BUNDLED_FONT_LANGUAGES) + [lang for lang in self.font_languages if lang not in BUNDLED_FONT_LANGUAGES]

    def color(self) -> TextColor:
        return TextColor.from_name(self.text_color) or TextColor.from_name(DEFAULT_TEXT_COLOR)


def _env(*names: str, default: Optional[str] = None) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value not in (None, ""):
            return value
    return default


def _split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def load_settings(**overrides) -> Settings:
    """Builds Settings from the environment; keyword overrides win.

    Numeric values are left as strings here and coerced by pydantic, so a
    malformed number surfaces as a pydantic ValidationError.
    """
    values = {
        "api_base": _env("PDFTRANS_API_BASE", "OPENAI_BASE_URL", default=DEFAULT_API_BASE),
        "api_key": _env("PDFTRANS_API_KEY", "OPENAI_API_KEY"),
        "model": _env("PDFTRANS_MODEL", default=DEFAULT_MODEL),
        "azure_endpoint": _env("AZURE_OPENAI_ENDPOINT"),
        "azure_api_key": _env("AZURE_OPENAI_API_KEY"),
        "azure_deployment": _env("AZURE_OPENAI_DEPLOYMENT_NAME"),
        "azure_api_version": _env("AZURE_OPENAI_API_VERSION", default=DEFAULT_AZURE_API_VERSION),
        "source_lang": _env("PDFTRANS_SOURCE_LANG", default=DEFAULT_SOURCE_LANG),
        "target_lang": _env("PDFTRANS_TARGET_LANG", default=DEFAULT_TARGET_LANG),
        "text_color": _env("PDFTRANS_TEXT_COLOR", default=DEFAULT_TEXT_COLOR),
        "cache_path": _env("PDFTRANS_CACHE_PATH", default=str(default_cache_path())),
        "memory_cache_entries": _env("PDFTRANS_MEMORY_CACHE_ENTRIES", default="1000"),
        "memory_cache_ttl": _env("PDFTRANS_MEMORY_CACHE_TTL", default="0"),
        "max_concurrent_requests": _env("PDFTRANS_MAX_CONCURRENT_REQUESTS", default="4"),
        "request_timeout": _env("PDFTRANS_REQUEST_TIMEOUT", default="60"),
        "retry_count": _env("PDFTRANS_RETRY_COUNT", default="3"),
        "retry_delay": _env("PDFTRANS_RETRY_DELAY", default="1.0"),
        "font_path": _env("PDFTRANS_FONT_PATH"),
        "font_languages": _split_list(_env("PDFTRANS_FONT_LANGUAGES")),
        "merge": {"gap_factor": _env("PDFTRANS_MERGE_GAP_FACTOR", default="0.6")},
        "fit": {
            "max_shrink_step": _env("PDFTRANS_MAX_SHRINK_STEP", default="0.1"),
            "min_font_size": _env("PDFTRANS_MIN_FONT_SIZE", default="5.0"),
        },
    }
    values.update({k: v for k, v in overrides.items() if v is not None})
    return Settings(**values)


# --- OpenAI Client Initialization ---
def get_openai_client(settings: Settings):
    """Returns an AzureOpenAI client when Azure settings are present, else an OpenAI client.

    Client-side retries are disabled; the translator runs its own retry loop.
    """
    if settings.uses_azure:
        if not all([settings.azure_endpoint, settings.azure_api_key, settings.azure_deployment]):
            raise ValueError("Azure OpenAI environment variables are not fully set.")
        return AzureOpenAI(
            api_key=settings.azure_api_key,
            azure_endpoint=settings.azure_endpoint,
            api_version=settings.azure_api_version,
            max_retries=0,
        )
    # Local servers (llama.cpp, Ollama) accept any key
    return OpenAI(
        base_url=settings.api_base,
        api_key=settings.api_key or "not-needed",
        max_retries=0,
    )


# --- Validation ---
def validate_config(settings: Settings) -> List[str]:
    """Returns a list of configuration problems; empty when the settings are usable."""
    problems = []

    if settings.uses_azure and not all([settings.azure_endpoint, settings.azure_api_key, settings.azure_deployment]):
        problems.append("Azure OpenAI environment variables are not fully set "
                        "(AZURE_OPENAI_ENDPOINT, AZURE_OPENAI_API_KEY, AZURE_OPENAI_DEPLOYMENT_NAME).")
    if not settings.uses_azure and not settings.api_base:
        problems.append("PDFTRANS_API_BASE is empty.")
    if not settings.model_identifier:
        problems.append("No model identifier configured (PDFTRANS_MODEL).")

    if settings.target_lang not in settings.supported_target_languages:
        problems.append(
            f"Target language '{settings.target_lang}' is not supported by the available fonts "
            f"(supported: {', '.join(settings.supported_target_languages)})."
        )
    if settings.font_languages and not settings.font_path:
        problems.append("PDFTRANS_FONT_LANGUAGES is set but PDFTRANS_FONT_PATH is not.")
    if settings.font_path and not Path(settings.font_path).is_file():
        problems.append(f"Font file not found: {settings.font_path}")

    if TextColor.from_name(settings.text_color) is None:
        problems.append(f"Unknown text color '{settings.text_color}'.")
    if settings.max_concurrent_requests < 1:
        problems.append("PDFTRANS_MAX_CONCURRENT_REQUESTS must be at least 1.")
    if settings.retry_count < 1:
        problems.append("PDFTRANS_RETRY_COUNT must be at least 1.")
    if settings.request_timeout <= 0:
        problems.append("PDFTRANS_REQUEST_TIMEOUT must be positive.")
    if settings.fit.min_font_size > settings.fit.max_font_size:
        problems.append("PDFTRANS_MIN_FONT_SIZE exceeds the maximum font size.")

    return problems
