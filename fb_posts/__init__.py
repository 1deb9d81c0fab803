from __future__ import annotations

from .aggregation import AggregationStore
from .config import config_sha256, load_config, resolve_runtime_secrets
from .config_schema import AppConfig
from .errors import BlockNamespace, ClassifiedError, ConfigError, ExtractionError
from .models import PostRecord, RequestLabel
from .urls import classify_url

__all__ = [
    "AggregationStore",
    "AppConfig",
    "BlockNamespace",
    "ClassifiedError",
    "ConfigError",
    "ExtractionError",
    "PostRecord",
    "RequestLabel",
    "classify_url",
    "config_sha256",
    "load_config",
    "resolve_runtime_secrets",
]
