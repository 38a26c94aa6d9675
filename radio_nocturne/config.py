import os
from enum import Enum
from pathlib import Path
from typing import List, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, Field

DEFAULT_OUTRO_SIGNATURE = (
    "Tôi là Morgan Hayes, và radio Truyện Đêm Khuya xin phép được tạm dừng tại đây. "
    "Chúc các bạn có một đêm ngon giấc nếu còn có thể."
)


class NarrativeStyle(str, Enum):
    DEFAULT = "default"
    CONFESSION = "confession"
    DOSSIER = "dossier"
    DIARY = "diary"
    INVESTIGATION = "investigation"


class ApiConfig(BaseModel):
    base_url: str = Field(default="https://api.deepseek.com")
    api_key: str = Field(default="")
    model: str = Field(default="deepseek-reasoner")
    utility_model: str = Field(default="deepseek-chat")
    temperature: float = Field(default=1.5, ge=0.1, le=2.0)
    top_p: float = Field(default=0.95, gt=0, le=1)
    max_tokens: int = Field(default=8192, ge=4096)
    connect_timeout_s: float = Field(default=30.0, gt=0)


class GenerationConfig(BaseModel):
    pass_timeout_s: float = Field(default=12 * 60, ge=0)
    max_passes: int = Field(default=12, gt=0)
    context_words: int = Field(default=320, gt=0)
    max_cache_anchors: int = Field(default=4, ge=0)
    emergency_overage_words: int = Field(default=500, ge=0)
    auto_complete_outro: bool = Field(default=False)


class BudgetConfig(BaseModel):
    target_min_words: int = Field(default=2000, gt=0)
    target_max_words: int = Field(default=10000, gt=0)
    min_offset: int = Field(default=700, ge=0)
    max_offset: int = Field(default=800, ge=0)
    target_words: int = Field(default=7200, gt=0)


class OutroConfig(BaseModel):
    signature: str = Field(default=DEFAULT_OUTRO_SIGNATURE, min_length=1)
    fuzzy: bool = Field(default=True)
    tail_chars: int = Field(default=1000, gt=0)
    host_phrases: List[str] = Field(
        default_factory=lambda: ["morgan hayes", "radio truyện đêm khuya"]
    )
    closing_phrases: List[str] = Field(
        default_factory=lambda: [
            "xin phép được tạm dừng tại đây",
            "đêm ngon giấc nếu còn có thể",
            "chúc các bạn có một đêm ngon giấc",
            "stopping here",
            "goodnight",
            "good night",
        ]
    )
    approach_phrases: List[str] = Field(
        default_factory=lambda: [
            "tôi là morgan",
            "đây là morgan",
            "morgan hayes",
            "radio truyện đêm khuya",
            "lời cảnh tỉnh",
            "kết thúc bản ghi",
            "bản ghi âm dừng lại",
            "tín hiệu biến mất",
            "chúc các bạn",
            "đêm ngon giấc",
        ]
    )
    approach_tail_chars: int = Field(default=800, gt=0)
    approach_min_chars: int = Field(default=1000, ge=0)


class BackgroundConfig(BaseModel):
    poll_interval_s: float = Field(default=0.4, gt=0)
    idle_timeout_s: float = Field(default=8.0, gt=0)
    state_check_every: int = Field(default=10, gt=0)


class StoryPersonalization(BaseModel):
    horror_level: int = Field(default=50, ge=0, le=100)
    narrative_style: NarrativeStyle = Field(default=NarrativeStyle.DEFAULT)
    target_words: int = Field(default=7200, gt=0)


class StorySettings(BaseModel):
    """User-facing settings, read once at the start of every attempt."""

    personalization: StoryPersonalization = Field(default_factory=StoryPersonalization)
    model: Optional[str] = Field(default=None)
    temperature: Optional[float] = Field(default=None, ge=0.1, le=2.0)
    allow_background_generation: bool = Field(default=False)

    def snapshot(self) -> "StorySettings":
        return self.model_copy(deep=True)


class Config(BaseModel):
    api: ApiConfig = Field(default_factory=ApiConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    outro: OutroConfig = Field(default_factory=OutroConfig)
    background: BackgroundConfig = Field(default_factory=BackgroundConfig)
    settings: StorySettings = Field(default_factory=StorySettings)
    log_level: str = Field(default="INFO")
    log_file: Optional[Path] = Field(default=None)

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    def to_yaml(self, path: Path):
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(self.model_dump(mode="json"), f, default_flow_style=False, allow_unicode=True)

    @classmethod
    def from_env(cls, base: Optional["Config"] = None) -> "Config":
        """Overlay DEEPSEEK_* / STORY_* environment variables on a config."""
        config = (base or cls()).model_copy(deep=True)
        data = config.model_dump()

        def _set(section: str, key: str, env: str, cast=str):
            raw = os.getenv(env, "").strip()
            if not raw:
                return
            try:
                data[section][key] = cast(raw)
            except ValueError:
                logger.warning(f"Ignoring {env}={raw!r}: expected {cast.__name__}")

        _set("api", "api_key", "DEEPSEEK_API_KEY")
        _set("api", "base_url", "DEEPSEEK_BASE_URL")
        _set("api", "model", "DEEPSEEK_MODEL")
        _set("api", "max_tokens", "DEEPSEEK_MAX_TOKENS", int)
        _set("api", "temperature", "STORY_TEMPERATURE", float)
        _set("generation", "pass_timeout_s", "STORY_TIMEOUT_S", float)
        _set("generation", "max_passes", "STORY_MAX_PASSES", int)
        _set("generation", "context_words", "STORY_CONTEXT_WORDS", int)
        _set("generation", "max_cache_anchors", "STORY_CACHE_ANCHORS", int)
        return cls(**data)
