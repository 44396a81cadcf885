from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[2]


class CategorySettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    key: str
    label: str

    @field_validator("key", "label")
    @classmethod
    def validate_text(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("categories[] key and label must not be empty")
        return text


DEFAULT_CATEGORIES = [
    CategorySettings(key="concert", label="Concert / Musique"),
    CategorySettings(key="marche", label="Marché / Salon"),
    CategorySettings(key="atelier", label="Atelier / Workshop"),
    CategorySettings(key="sport", label="Sport"),
    CategorySettings(key="loisirs", label="Loisirs"),
    CategorySettings(key="soiree", label="Soirée / Bar / Club"),
    CategorySettings(key="theatre", label="Théâtre / Spectacle"),
    CategorySettings(key="enfants", label="Enfants / Famille"),
    CategorySettings(key="gastronomie", label="Gastronomie"),
    CategorySettings(key="autre", label="Autre"),
]


class UiSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str = "GoEvent"
    today_list_size: int = Field(default=12, ge=1, le=100)


class SearchSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    default_city: str | None = None

    @field_validator("default_city")
    @classmethod
    def validate_default_city(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


class ModerationSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    admin_user_ids: list[str] = Field(default_factory=list)

    @field_validator("admin_user_ids")
    @classmethod
    def validate_admin_user_ids(cls, values: list[str]) -> list[str]:
        normalized = [value.strip() for value in values if isinstance(value, str) and value.strip()]
        return list(dict.fromkeys(normalized))


class StorageSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    image_bucket: str = "event-images"
    cache_control_seconds: int = Field(default=3600, ge=0)

    @field_validator("image_bucket")
    @classmethod
    def validate_image_bucket(cls, value: str) -> str:
        text = value.strip().strip("/")
        if not text:
            raise ValueError("storage.image_bucket must not be empty")
        return text


class RefreshSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    interval_minutes: int = Field(default=10, ge=1, le=60)
    jitter_seconds: int = Field(default=15, ge=0, le=300)


class GoEventYamlSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ui: UiSettings = Field(default_factory=UiSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    categories: list[CategorySettings] = Field(default_factory=lambda: list(DEFAULT_CATEGORIES))
    moderation: ModerationSettings = Field(default_factory=ModerationSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    refresh: RefreshSettings = Field(default_factory=RefreshSettings)

    @field_validator("categories")
    @classmethod
    def validate_categories(cls, values: list[CategorySettings]) -> list[CategorySettings]:
        if not values:
            raise ValueError("categories must contain at least one entry")
        keys = [category.key for category in values]
        if len(set(keys)) != len(keys):
            raise ValueError("categories[].key values must be unique")
        return values


class EnvSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    goevent_env: Literal["dev", "test", "prod"] = "dev"
    goevent_timezone: str = "Europe/Paris"
    goevent_config_path: Path = Path("config/goevent.yaml")
    goevent_db_path: Path = Path("data/goevent.db")
    goevent_backend_url: str = "http://localhost:54321"
    goevent_backend_anon_key: str = ""

    @field_validator("goevent_timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @field_validator("goevent_backend_url")
    @classmethod
    def validate_backend_url(cls, value: str) -> str:
        text = value.strip().rstrip("/")
        parsed = urlparse(text)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("goevent_backend_url must be an absolute http(s) URL")
        return text


class AppSettings(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    env: EnvSettings
    yaml: GoEventYamlSettings
    project_root: Path
    config_path: Path
    db_path: Path
    timezone: ZoneInfo

    @property
    def category_keys(self) -> list[str]:
        return [category.key for category in self.yaml.categories]

    def is_admin(self, user_id: str | None) -> bool:
        return bool(user_id) and user_id in self.yaml.moderation.admin_user_ids


def _resolve_project_path(path: Path) -> Path:
    if path.is_absolute():
        return path
    return (PROJECT_ROOT / path).resolve()


def _load_yaml_settings(path: Path) -> GoEventYamlSettings:
    if not path.exists():
        raise FileNotFoundError(f"GoEvent config file not found: {path}")

    raw_config = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ValueError("GoEvent config must be a YAML mapping/object at the top level")
    return GoEventYamlSettings.model_validate(raw_config)


@lru_cache(maxsize=1)
def load_settings() -> AppSettings:
    env = EnvSettings()
    config_path = _resolve_project_path(env.goevent_config_path)
    db_path = _resolve_project_path(env.goevent_db_path)
    yaml_settings = _load_yaml_settings(config_path)
    timezone = ZoneInfo(env.goevent_timezone)
    return AppSettings(
        env=env,
        yaml=yaml_settings,
        project_root=PROJECT_ROOT,
        config_path=config_path,
        db_path=db_path,
        timezone=timezone,
    )
