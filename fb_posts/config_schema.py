from __future__ import annotations

import re
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_LANGUAGE_RE = re.compile(r"^[a-z]{2}(?:[-_][A-Z]{2})?$")


def _normalize_url_list(values: list[Any]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()

    for item in values:
        if isinstance(item, dict):
            item = item.get("url")
        if not isinstance(item, str):
            continue
        url = item.strip()
        if not url:
            continue
        key = url.casefold()
        if key in seen:
            continue
        seen.add(key)
        out.append(url)

    return out


def _validate_env_var_name(value: str) -> str:
    name = (value or "").strip()
    if not _ENV_NAME_RE.fullmatch(name):
        raise ValueError("must be a valid environment variable name")
    return name


PositiveInt = Annotated[int, Field(ge=1)]
NonNegativeInt = Annotated[int, Field(ge=0)]


class CrawlerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_concurrency: PositiveInt = 4
    max_request_retries: NonNegativeInt = 10
    handle_page_timeout_secs: PositiveInt = 600
    navigation_timeout_secs: PositiveInt = 60
    headless: bool = True
    language: str = "en-US"
    checkpoint_interval_secs: NonNegativeInt = 60  # 0 disables periodic checkpoints
    debug_log: bool = False
    stealth: bool = True  # generated browser fingerprints per session

    @field_validator("language")
    @classmethod
    def _language_must_be_locale(cls, v: str) -> str:
        lang = (v or "").strip()
        if not _LANGUAGE_RE.fullmatch(lang):
            raise ValueError("must look like 'en' or 'en-US'")
        return lang


class SessionsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_pool_size: PositiveInt = 20
    max_error_score: float = Field(3.0, gt=0.0)
    max_usage_count: PositiveInt = 50
    persist_cookies: bool = False


class ProxyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    urls: list[str] = Field(default_factory=list)
    groups: list[str] = Field(default_factory=list)
    required: bool = False

    @field_validator("urls", mode="before")
    @classmethod
    def _normalize_urls(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if not isinstance(v, list):
            raise ValueError("must be a list of proxy URLs")
        return _normalize_url_list(v)

    @field_validator("groups")
    @classmethod
    def _upper_groups(cls, v: list[str]) -> list[str]:
        return [g.strip().upper() for g in v if (g or "").strip()]

    @model_validator(mode="after")
    def _required_needs_urls(self) -> "ProxyConfig":
        if self.required and not self.urls:
            raise ValueError("proxy.required is set but proxy.urls is empty")
        return self

    @property
    def residential(self) -> bool:
        return "RESIDENTIAL" in self.groups


class DeviceProfile(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    user_agent: str
    width: PositiveInt
    height: PositiveInt
    device_scale_factor: float = Field(1.0, gt=0.0)
    is_mobile: bool = False
    has_touch: bool = False


def _default_mobile() -> DeviceProfile:
    return DeviceProfile(
        user_agent=(
            "Mozilla/5.0 (Linux; Android 10; SM-A205U) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/90.0.4430.91 Mobile Safari/537.36"
        ),
        width=400,
        height=700,
        device_scale_factor=2.0,
        is_mobile=True,
        has_touch=True,
    )


def _default_desktop() -> DeviceProfile:
    return DeviceProfile(
        user_agent=(
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 11_3_1) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/90.0.4430.93 Safari/537.36"
        ),
        width=1920,
        height=1080,
    )


class DevicesConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    mobile: DeviceProfile = Field(default_factory=_default_mobile)
    desktop: DeviceProfile = Field(default_factory=_default_desktop)

    def for_request(self, *, use_mobile: bool) -> DeviceProfile:
        return self.mobile if use_mobile else self.desktop


class BlockingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    url_patterns: list[str] = Field(
        default_factory=lambda: [
            ".woff",
            ".woff2",
            ".ttf",
            ".ico",
            ".webp",
            ".mov",
            ".mpeg",
            ".mpg",
            ".mp4",
            "scontent-",
            "scontent.fplu",
            "safe_image.php",
            "static_map.php",
            "ajax/bz",
        ]
    )

    # Regexes; matching responses are fetched once and served from memory afterwards.
    cache_patterns: list[str] = Field(default_factory=lambda: [r"rsrc\.php"])

    @field_validator("url_patterns")
    @classmethod
    def _drop_blank_patterns(cls, v: list[str]) -> list[str]:
        return [p for p in (s.strip() for s in v) if p]

    @field_validator("cache_patterns")
    @classmethod
    def _patterns_must_compile(cls, v: list[str]) -> list[str]:
        out = [p for p in (s.strip() for s in v) if p]
        for pattern in out:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid regex {pattern!r}: {e}") from e
        return out


class ExtractionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    content_timeout_ms: PositiveInt = 30000
    mobile_marker_timeout_ms: PositiveInt = 15000


class VideoConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    initial_delay_ms: NonNegativeInt = 1000
    cookie_poll_interval_ms: PositiveInt = 250
    cookie_max_polls: PositiveInt = 20
    poster_timeout_ms: PositiveInt = 30000
    settle_delay_ms: NonNegativeInt = 2000
    appear_timeout_ms: PositiveInt = 3000


class ApifyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    token_env: str = "APIFY_TOKEN"
    push_dataset: bool = False
    dataset_name: str | None = None
    state_store_name: str | None = None
    state_key: str = "STATE"

    @field_validator("token_env")
    @classmethod
    def _token_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)

    @field_validator("dataset_name", "state_store_name")
    @classmethod
    def _blank_to_none(cls, v: str | None) -> str | None:
        name = (v or "").strip()
        return name or None

    @property
    def enabled(self) -> bool:
        return self.push_dataset or self.state_store_name is not None


class OutputConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    dataset_file: str = "dataset.jsonl"
    excel: bool = True


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    start_urls: list[str]
    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    devices: DevicesConfig = Field(default_factory=DevicesConfig)
    blocking: BlockingConfig = Field(default_factory=BlockingConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    video: VideoConfig = Field(default_factory=VideoConfig)
    apify: ApifyConfig = Field(default_factory=ApifyConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)

    @field_validator("start_urls", mode="before")
    @classmethod
    def _normalize_start_urls(cls, v: Any) -> list[str]:
        if not isinstance(v, list):
            raise ValueError("must be a list of URLs")
        urls = _normalize_url_list(v)
        if not urls:
            raise ValueError("must contain at least one URL")
        return urls
