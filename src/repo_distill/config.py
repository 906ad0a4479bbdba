from __future__ import annotations

from enum import StrEnum, auto
from pathlib import PurePosixPath


class LanguageTag(StrEnum):
    """Source languages the compressor knows how to label.

    Only a subset has a structural grammar profile; the others are still
    tagged so that corpus statistics stay meaningful.
    """

    TYPESCRIPT = auto()
    JAVASCRIPT = auto()
    PYTHON = auto()
    RUST = auto()
    GO = auto()
    JAVA = auto()
    C = auto()
    CPP = auto()
    RUBY = auto()
    PHP = auto()


class ProviderTag(StrEnum):
    """Remote model provider families."""

    ANTHROPIC = auto()
    OPENAI = auto()
    OLLAMA = auto()
    OPENROUTER = auto()


class CompressionKind(StrEnum):
    """How a unit's content was reduced."""

    STRUCTURAL = auto()
    WHITESPACE = auto()
    NONE = auto()


class CountingScheme(StrEnum):
    """Tokenization tables available to the token counter."""

    O200K = "o200k_base"
    CL100K = "cl100k_base"
    HEURISTIC = "heuristic"


EXT2LANG: dict[str, LanguageTag] = {
    ".c": LanguageTag.C,
    ".cc": LanguageTag.CPP,
    ".cjs": LanguageTag.JAVASCRIPT,
    ".cpp": LanguageTag.CPP,
    ".cxx": LanguageTag.CPP,
    ".go": LanguageTag.GO,
    ".h": LanguageTag.C,
    ".hh": LanguageTag.CPP,
    ".hpp": LanguageTag.CPP,
    ".java": LanguageTag.JAVA,
    ".js": LanguageTag.JAVASCRIPT,
    ".jsx": LanguageTag.JAVASCRIPT,
    ".mjs": LanguageTag.JAVASCRIPT,
    ".php": LanguageTag.PHP,
    ".py": LanguageTag.PYTHON,
    ".pyi": LanguageTag.PYTHON,
    ".rb": LanguageTag.RUBY,
    ".rs": LanguageTag.RUST,
    ".ts": LanguageTag.TYPESCRIPT,
    ".tsx": LanguageTag.TYPESCRIPT,
}

DEFAULT_MODELS: dict[ProviderTag, str] = {
    ProviderTag.ANTHROPIC: "claude-sonnet-4-5-20250929",
    ProviderTag.OPENAI: "gpt-4o",
    ProviderTag.OLLAMA: "llama3.1:70b",
    ProviderTag.OPENROUTER: "anthropic/claude-3.5-sonnet",
}

API_KEY_ENV: dict[ProviderTag, str] = {
    ProviderTag.ANTHROPIC: "ANTHROPIC_API_KEY",
    ProviderTag.OPENAI: "OPENAI_API_KEY",
    ProviderTag.OPENROUTER: "OPENROUTER_API_KEY",
}

DEFAULT_BASE_URLS: dict[ProviderTag, str] = {
    ProviderTag.ANTHROPIC: "https://api.anthropic.com",
    ProviderTag.OPENAI: "https://api.openai.com/v1",
    ProviderTag.OLLAMA: "http://localhost:11434",
    ProviderTag.OPENROUTER: "https://openrouter.ai/api/v1",
}

OLLAMA_HOST_ENV = "OLLAMA_HOST"
ANTHROPIC_API_VERSION = "2023-06-01"


def detect_language(path: str) -> LanguageTag | None:
    """Heuristic guess of a file's language based on its extension.

    Args:
        path (str): repository-relative file path

    Returns:
        LanguageTag | None: the detected language, or None when the extension is unknown
    """
    return EXT2LANG.get(PurePosixPath(path.replace("\\", "/")).suffix.lower())


def default_model(provider: ProviderTag) -> str:
    """Get the model used when the configuration leaves it empty.

    Args:
        provider (ProviderTag): the provider family

    Returns:
        str: the provider's default model name
    """
    return DEFAULT_MODELS[provider]
