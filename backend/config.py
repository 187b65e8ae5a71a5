"""Configuration for the Vaultlink semantic index and context linker."""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SEVEN_DAYS = 7 * 24 * 60 * 60
TEN_MINUTES = 10 * 60

_ENV_PREFIX = "VAULTLINK_"


def _default_storage_dir() -> Path:
    return Path(__file__).resolve().parent / "storage"


class VaultlinkConfig(BaseModel):
    """Every option the index, the providers and the linker recognise."""

    model_config = ConfigDict(validate_assignment=True)

    vault_dir: Path = Field(default_factory=lambda: _default_storage_dir() / "vault")
    cache_path: Path = Field(
        default_factory=lambda: _default_storage_dir() / "embeddings-cache.json"
    )
    document_extensions: List[str] = Field(default_factory=lambda: [".md"])

    enable_indexing: bool = True
    embedding_model: str = "text-embedding-3-small"
    llm_provider: Literal["openai", "custom"] = "openai"
    openai_api_key: str = ""
    custom_api_base: str = ""
    custom_embedding_url: str = ""
    request_timeout: Optional[float] = None

    # Sizes are in approximate tokens (1 token ~ 4 characters).
    chunk_size: int = Field(default=500, gt=0)
    chunk_overlap: int = Field(default=50, gt=0)
    top_k: int = Field(default=3, ge=1)
    build_batch_size: int = Field(default=10, ge=1)

    enable_semantic_links: bool = True
    semantic_link_threshold: float = Field(default=0.78, ge=-1.0, le=1.0)
    max_links_per_sentence: int = Field(default=3, ge=1)
    semantic_candidates_per_sentence: int = Field(default=4, ge=1)

    save_debounce_seconds: float = Field(default=2.0, ge=0.0)
    cache_max_age_seconds: float = Field(default=SEVEN_DAYS, gt=0)
    title_index_max_age_seconds: float = Field(default=TEN_MINUTES, gt=0)

    @field_validator("document_extensions")
    @classmethod
    def _normalize_extensions(cls, value: List[str]) -> List[str]:
        cleaned = []
        for ext in value:
            ext = ext.strip().lower()
            if not ext:
                continue
            cleaned.append(ext if ext.startswith(".") else f".{ext}")
        return cleaned or [".md"]

    @model_validator(mode="after")
    def _check_overlap(self) -> "VaultlinkConfig":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be less than chunk_size")
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "VaultlinkConfig":
        """Build a config from ``VAULTLINK_*`` environment variables.

        Unknown variables are ignored. ``OPENAI_API_KEY`` is honoured when no
        Vaultlink-specific key is set. Keyword overrides win over the environment.
        """
        env = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = env.get(f"{_ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if name == "document_extensions":
                values[name] = raw.split(",")
            elif name == "request_timeout" and not raw.strip():
                values[name] = None
            else:
                values[name] = raw

        if "openai_api_key" not in values and env.get("OPENAI_API_KEY"):
            values["openai_api_key"] = env["OPENAI_API_KEY"]

        values.update(overrides)
        return cls(**values)
