"""Configuration loader: reads config.yaml, validates with Pydantic.

Two concerns live here: how to reach the generation service (base URL,
timeouts, prompt names per unit kind) and how the pipeline host is exposed
(API key, CORS origins, optional on-disk store).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, field_validator

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "DOCSTREAM_CONFIG"


class ServiceConfig(BaseModel):
    """Where the generation service lives and how long to wait for it."""

    base_url: str = "http://localhost:8000"
    api_key: str | None = None
    scenario: str = "default"
    connect_timeout: float = 10.0
    read_timeout: float | None = 300.0  # None: wait forever on a stalled stream

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL, got '{v}'")
        return v.rstrip("/")


class PromptPair(BaseModel):
    """Prompt names for first generation and for revision of one unit kind."""

    generate: str
    revise: str


class PromptConfig(BaseModel):
    outline: PromptPair = PromptPair(generate="01_generate_outline", revise="02_revise_outline")
    content: PromptPair = PromptPair(generate="generate_content", revise="04_revise_content")
    layout: PromptPair = PromptPair(generate="05_generate_html", revise="05_generate_html")

    def prompt_for(self, kind: str, revision: bool = False) -> str:
        pair: PromptPair = getattr(self, kind)
        return pair.revise if revision else pair.generate


class HostConfig(BaseModel):
    """Top-level configuration."""

    service: ServiceConfig = ServiceConfig()
    prompts: PromptConfig = PromptConfig()
    layout_field: str = "html"
    store_dir: str | None = None

    # Auth & CORS
    api_key: str | None = None
    allowed_origins: list[str] = ["*"]


# ---------------------------------------------------------------------------
# Module-level config cache
# ---------------------------------------------------------------------------

_config: HostConfig | None = None
_config_path: str = "config.yaml"


def default_config_path() -> str:
    return os.environ.get(CONFIG_ENV_VAR, "config.yaml")


def load_config(path: str | None = None) -> HostConfig:
    """Read config.yaml from disk, validate, and cache."""
    global _config, _config_path
    _config_path = path or default_config_path()

    config_file = Path(_config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_file.resolve()}")

    raw = yaml.safe_load(config_file.read_text()) or {}
    _config = HostConfig(**raw)

    logger.info(
        f"Loaded config: service={_config.service.base_url}, "
        f"scenario={_config.service.scenario}, store={_config.store_dir or 'disabled'}"
    )
    return _config


def get_config() -> HostConfig:
    """Return cached config. Raises if not yet loaded."""
    if _config is None:
        raise RuntimeError("Config not loaded: call load_config() first")
    return _config


def reload_config() -> HostConfig:
    """Re-read config from disk. Called by /reload endpoint."""
    logger.info(f"Reloading config from {_config_path}")
    return load_config(_config_path)
