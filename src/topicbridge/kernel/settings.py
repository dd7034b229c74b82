"""Bridge settings.

Settings are stored in ~/.topicbridge/bridge.yaml (or a path passed on the
command line) and include:
- destination: forum chat + bot token (or the env var holding it)
- source: import path + options of the source messaging client
- storage: json file or MongoDB
- media: transcoder binary and conversion concurrency
- recovery: reconnect / re-login backoff
- feature switches, polling interval, dedup window, blocked terms
"""
from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml  # type: ignore
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..errors import ConfigurationError
from ..paths import settings_path, state_dir, temp_dir
from ..util.fs import atomic_write_text


def _is_env_var_name(value: str) -> bool:
    return bool(re.fullmatch(r"[A-Z_][A-Z0-9_]*", (value or "").strip()))


def _resolve_secret(value: str, env_name: str) -> str:
    """Prefer the env var named by `env_name`, then the literal value.

    A raw secret pasted into the *_env field (common misconfig) is accepted as the value.
    """
    env_raw = str(env_name or "").strip()
    resolved = ""
    if _is_env_var_name(env_raw):
        resolved = os.environ.get(env_raw, "").strip()
    if not resolved:
        resolved = str(value or "").strip()
    if not resolved and env_raw and not _is_env_var_name(env_raw):
        resolved = env_raw
    return resolved


_TRUE_WORDS = {"1", "true", "yes", "y", "on"}
_FALSE_WORDS = {"0", "false", "no", "n", "off"}


def _loose_bool(value: Any, default: bool) -> bool:
    """Accept "false", "off", 0 and friends as well as real bools."""
    if value is None or isinstance(value, bool):
        return default if value is None else value
    if isinstance(value, (int, float)):
        return value != 0
    s = str(value).strip().lower()
    if s in _TRUE_WORDS:
        return True
    if s in _FALSE_WORDS:
        return False
    return default


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class _Section(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class DestinationSettings(_Section):
    platform: Literal["telegram"] = "telegram"
    token: str = ""
    token_env: str = Field(default="", validation_alias=_alias("token_env", "bot_token_env", "tokenEnv"))
    chat_id: str = Field(default="", validation_alias=_alias("chat_id", "chatId"))
    poll_timeout: int = Field(default=25, validation_alias=_alias("poll_timeout", "pollTimeout"))
    max_per_minute: int = Field(default=20, ge=1, validation_alias=_alias("max_per_minute", "maxPerMinute"))

    @field_validator("chat_id", mode="before")
    @classmethod
    def _chat_id_str(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()

    def resolved_token(self) -> str:
        return _resolve_secret(self.token, self.token_env)


class SourceSettings(_Section):
    client: str = ""
    options: Dict[str, Any] = Field(default_factory=dict)


class StorageSettings(_Section):
    backend: Literal["json", "mongo"] = "json"
    path: str = ""
    mongo_uri: str = Field(default="", validation_alias=_alias("mongo_uri", "mongoUri"))
    mongo_uri_env: str = Field(default="", validation_alias=_alias("mongo_uri_env", "mongoUriEnv"))
    database: str = "topicbridge"
    collection: str = "bridge"

    def resolved_path(self) -> Path:
        if self.path.strip():
            return Path(self.path).expanduser()
        return state_dir() / "bridge_store.json"

    def resolved_mongo_uri(self) -> str:
        return _resolve_secret(self.mongo_uri, self.mongo_uri_env)


class MediaSettings(_Section):
    max_concurrent_conversions: int = Field(
        default=2, ge=1, validation_alias=_alias("max_concurrent_conversions", "maxConcurrentConversions")
    )
    ffmpeg_path: str = Field(default="ffmpeg", validation_alias=_alias("ffmpeg_path", "ffmpegPath"))
    timeout_seconds: float = Field(default=120.0, gt=0, validation_alias=_alias("timeout_seconds", "timeoutSeconds"))
    temp_dir: str = Field(default="", validation_alias=_alias("temp_dir", "tempDir"))

    def resolved_temp_dir(self) -> Path:
        if self.temp_dir.strip():
            return Path(self.temp_dir).expanduser()
        return temp_dir()


class RecoverySettings(_Section):
    backoff_initial_seconds: float = Field(
        default=1.0, gt=0, validation_alias=_alias("backoff_initial_seconds", "backoffInitialSeconds")
    )
    backoff_max_seconds: float = Field(
        default=60.0, gt=0, validation_alias=_alias("backoff_max_seconds", "backoffMaxSeconds")
    )
    max_attempts: int = Field(default=5, ge=1, validation_alias=_alias("max_attempts", "maxAttempts"))


class BridgeSettings(_Section):
    welcome_message: bool = Field(default=True, validation_alias=_alias("welcome_message", "welcomeMessage"))
    profile_pic_sync: bool = Field(default=True, validation_alias=_alias("profile_pic_sync", "profilePicSync"))
    poll_interval_ms: int = Field(default=5000, ge=0, validation_alias=_alias("poll_interval_ms", "pollIntervalMs"))
    max_dedup_window: int = Field(default=1000, ge=1, validation_alias=_alias("max_dedup_window", "maxDedupWindow"))
    blocked_terms: List[str] = Field(default_factory=list, validation_alias=_alias("blocked_terms", "blockedTerms"))
    skip_backlog: bool = Field(default=True, validation_alias=_alias("skip_backlog", "skipBacklog"))
    topic_verify_ttl_seconds: float = Field(
        default=60.0, ge=0, validation_alias=_alias("topic_verify_ttl_seconds", "topicVerifyTtlSeconds")
    )
    heartbeat_seconds: float = Field(default=300.0, gt=0, validation_alias=_alias("heartbeat_seconds", "heartbeatSeconds"))
    log_level: str = Field(default="INFO", validation_alias=_alias("log_level", "logLevel"))

    destination: DestinationSettings = Field(default_factory=DestinationSettings)
    source: SourceSettings = Field(default_factory=SourceSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    media: MediaSettings = Field(default_factory=MediaSettings)
    recovery: RecoverySettings = Field(default_factory=RecoverySettings)

    @field_validator("welcome_message", "profile_pic_sync", "skip_backlog", mode="before")
    @classmethod
    def _bools(cls, v: Any) -> bool:
        return _loose_bool(v, True)

    @field_validator("blocked_terms", mode="before")
    @classmethod
    def _terms_list(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return [str(t) for t in v if str(t).strip()]

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    def require_destination(self) -> None:
        """Fail fast when the destination cannot be reached at all."""
        missing = []
        if not self.destination.resolved_token():
            missing.append("destination.token")
        if not self.destination.chat_id:
            missing.append("destination.chat_id")
        if missing:
            hint = ""
            if self.destination.token_env and _is_env_var_name(self.destination.token_env):
                hint = f" (set environment variable {self.destination.token_env})"
            raise ConfigurationError(f"missing required settings: {', '.join(missing)}{hint}")

    def masked(self) -> Dict[str, Any]:
        doc = self.model_dump()
        if doc["destination"].get("token"):
            doc["destination"]["token"] = "***"
        if doc["storage"].get("mongo_uri"):
            doc["storage"]["mongo_uri"] = "***"
        return doc


def load_settings(path: Optional[Path] = None) -> BridgeSettings:
    """Load settings from YAML. A missing file yields defaults."""
    p = path or settings_path()
    doc: Dict[str, Any] = {}
    if p.exists():
        try:
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"invalid YAML in {p}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigurationError(f"{p} must contain a mapping at top level")
        doc = raw
    return settings_from_dict(doc)


def settings_from_dict(doc: Dict[str, Any]) -> BridgeSettings:
    try:
        return BridgeSettings.model_validate(doc)
    except ValueError as e:
        raise ConfigurationError(f"invalid settings: {e}") from e


def save_settings(settings: BridgeSettings, path: Optional[Path] = None) -> None:
    p = path or settings_path()
    atomic_write_text(p, yaml.safe_dump(settings.model_dump(), allow_unicode=True, sort_keys=False))
