import os
from concurrent.futures import Executor
from dataclasses import dataclass, field
from pathlib import Path

import httpx
from dotenv import load_dotenv

from filestack_api.coordinator import DEFAULT_CONCURRENCY
from filestack_api.errors import ConfigError
from filestack_api.planner import (
    DEFAULT_PART_SIZE,
    MAX_PART_SIZE,
    MIN_PART_SIZE,
)
from filestack_api.retry import (
    DEFAULT_BASE_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
    RetryPolicy,
)
from filestack_api.service import DEFAULT_BASE_URL
from filestack_api.types import Security, StorageOptions, parse_size

_TIMEOUT_READ = 120
_TIMEOUT_CONNECT = 60


@dataclass
class UploadConfig:
    """
    Everything an FsClient needs, checked up front.

    ``io_executor`` runs part uploads; ``callback_executor`` runs the
    callbacks handed to ``FsClient.upload_async``. Either may be left as None
    and the client creates its own.
    """

    api_key: str | None = None
    security: Security | None = None
    storage: StorageOptions = field(default_factory=StorageOptions)
    base_url: str = DEFAULT_BASE_URL
    part_size: int | str | None = None
    min_part_size: int | str | None = None
    max_part_size: int | str | None = None
    concurrency: int | None = None
    max_attempts: int | None = None
    base_delay: float | None = None
    max_delay: float | None = None
    timeout_connect: float | None = None
    timeout_read: float | None = None
    io_executor: Executor | None = None
    callback_executor: Executor | None = None

    def resolve_defaults(self) -> None:
        """Fill in unset fields. Explicit values, zero included, are kept for validation."""

        def _default(value, fallback):
            return fallback if value is None else value

        self.part_size = parse_size(_default(self.part_size, DEFAULT_PART_SIZE))
        self.min_part_size = parse_size(_default(self.min_part_size, MIN_PART_SIZE))
        self.max_part_size = parse_size(_default(self.max_part_size, MAX_PART_SIZE))
        self.concurrency = _default(self.concurrency, DEFAULT_CONCURRENCY)
        self.max_attempts = _default(self.max_attempts, DEFAULT_MAX_ATTEMPTS)
        self.base_delay = _default(self.base_delay, DEFAULT_BASE_DELAY)
        self.max_delay = _default(self.max_delay, DEFAULT_MAX_DELAY)
        self.timeout_connect = _default(self.timeout_connect, _TIMEOUT_CONNECT)
        self.timeout_read = _default(self.timeout_read, _TIMEOUT_READ)

    def problems(self) -> list[str]:
        out: list[str] = []
        if not self.api_key:
            out.append("api_key is required")
        if self.security is None:
            out.append("security (signed policy) is required")
        elif not self.security.policy or not self.security.signature:
            out.append("security needs both a policy and a signature")
        if not self.base_url.startswith("http"):
            out.append(f"base_url must be an http(s) URL, got {self.base_url!r}")
        sizes: dict[str, int] = {}
        for name in ("part_size", "min_part_size", "max_part_size"):
            value = getattr(self, name)
            if not isinstance(value, int):
                out.append(f"{name} has not been resolved to a byte count: {value!r}")
            elif value <= 0:
                out.append(f"{name} must be positive, got {value}")
            else:
                sizes[name] = value
        if len(sizes) == 3 and sizes["max_part_size"] < sizes["min_part_size"]:
            out.append(
                f"max_part_size {sizes['max_part_size']} is less than "
                f"min_part_size {sizes['min_part_size']}"
            )
        if self.concurrency is not None and self.concurrency < 1:
            out.append(f"concurrency must be >= 1, got {self.concurrency}")
        if self.max_attempts is not None and self.max_attempts < 1:
            out.append(f"max_attempts must be >= 1, got {self.max_attempts}")
        if (self.base_delay or 0) < 0 or (self.max_delay or 0) < 0:
            out.append("retry delays must be non-negative")
        for name in ("timeout_connect", "timeout_read"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                out.append(f"{name} must be positive, got {value}")
        return out

    def validate(self) -> "UploadConfig":
        """Fill in defaults and raise one ConfigError listing every problem."""
        try:
            self.resolve_defaults()
        except ValueError as e:
            raise ConfigError([str(e)]) from e
        problems = self.problems()
        if problems:
            raise ConfigError(problems)
        return self

    def retry_policy(self) -> RetryPolicy:
        assert self.max_attempts is not None
        assert self.base_delay is not None and self.max_delay is not None
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
        )

    def timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.timeout_read, connect=self.timeout_connect)

    @staticmethod
    def from_env(dotenv_path: str | Path | None = None, **overrides) -> "UploadConfig":
        """
        Build a config from FILESTACK_* environment variables.

        A .env file is loaded first if present. Keyword arguments win over the
        environment.
        """
        load_dotenv(dotenv_path)

        def _get(name: str) -> str | None:
            value = os.getenv(name)
            if value is None or value.strip() == "":
                return None
            return value.strip()

        def _int(name: str) -> int | None:
            value = _get(name)
            return int(value) if value is not None else None

        def _float(name: str) -> float | None:
            value = _get(name)
            return float(value) if value is not None else None

        policy = _get("FILESTACK_POLICY")
        signature = _get("FILESTACK_SIGNATURE")
        security = None
        if policy is not None or signature is not None:
            security = Security(policy=policy or "", signature=signature or "")

        storage = StorageOptions(
            location=_get("FILESTACK_STORE_LOCATION") or "s3",
            path=_get("FILESTACK_STORE_PATH"),
            container=_get("FILESTACK_STORE_CONTAINER"),
            region=_get("FILESTACK_STORE_REGION"),
            access=_get("FILESTACK_STORE_ACCESS"),
        )

        try:
            values: dict = {
                "api_key": _get("FILESTACK_API_KEY"),
                "security": security,
                "storage": storage,
                "base_url": _get("FILESTACK_UPLOAD_URL") or DEFAULT_BASE_URL,
                "part_size": _get("FILESTACK_PART_SIZE"),
                "min_part_size": _get("FILESTACK_MIN_PART_SIZE"),
                "max_part_size": _get("FILESTACK_MAX_PART_SIZE"),
                "concurrency": _int("FILESTACK_CONCURRENCY"),
                "max_attempts": _int("FILESTACK_MAX_ATTEMPTS"),
                "base_delay": _float("FILESTACK_RETRY_BASE_DELAY"),
                "max_delay": _float("FILESTACK_RETRY_MAX_DELAY"),
                "timeout_connect": _float("FILESTACK_TIMEOUT_CONNECT"),
                "timeout_read": _float("FILESTACK_TIMEOUT_READ"),
            }
        except ValueError as e:
            raise ConfigError([f"Invalid environment value: {e}"]) from e
        values.update(overrides)
        return UploadConfig(**values)
