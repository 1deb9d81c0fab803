from __future__ import annotations

from enum import Enum
from typing import Any, Mapping


class ConfigError(RuntimeError):
    """Raised when configuration is missing or invalid."""


class ApifyError(RuntimeError):
    """Raised when an Apify dataset or key-value store call fails."""


class StorageError(RuntimeError):
    """Raised when reading or writing state in SQLite fails."""


class ExportError(RuntimeError):
    """Raised when writing dataset outputs fails."""


class BlockNamespace(str, Enum):
    CAPTCHA = "captcha"
    MOBILE_META = "mobile-meta"
    INTERNAL = "internal"
    LOGIN = "login"
    THRESHOLD = "threshold"
    MISSING_CONTENT = "missing-content"


# Namespaces where the network identity is considered tainted.
RETIRING_NAMESPACES: frozenset[BlockNamespace] = frozenset(
    {
        BlockNamespace.CAPTCHA,
        BlockNamespace.MOBILE_META,
        BlockNamespace.INTERNAL,
        BlockNamespace.LOGIN,
        BlockNamespace.THRESHOLD,
    }
)


class ClassifiedError(RuntimeError):
    """
    A page failure tagged with a namespace from the block taxonomy.

    The namespace drives the session policy: see RETIRING_NAMESPACES.
    """

    def __init__(
        self,
        message: str,
        *,
        namespace: BlockNamespace,
        url: str | None = None,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.namespace = BlockNamespace(namespace)
        self.url = url
        self.meta: dict[str, Any] = dict(meta or {})

    @property
    def retires_session(self) -> bool:
        return self.namespace in RETIRING_NAMESPACES

    def to_json(self) -> dict[str, Any]:
        return {
            "message": str(self),
            "namespace": self.namespace.value,
            "url": self.url,
            "meta": dict(self.meta),
        }


class ExtractionError(ClassifiedError):
    """Raised when the expected post content region is absent."""

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message,
            namespace=BlockNamespace.MISSING_CONTENT,
            url=url,
            meta=meta,
        )

    @property
    def kind(self) -> str:
        return self.namespace.value


def classify_failure(exc: BaseException) -> BlockNamespace | None:
    """Return the taxonomy namespace for a failure, or None when unclassified."""
    if isinstance(exc, ClassifiedError):
        return exc.namespace
    return None
