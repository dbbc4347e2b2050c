from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, TypeVar

from .errors import ConfigError
from .runner import DEFAULT_CANCEL_GRACE

T = TypeVar("T")


@dataclass(frozen=True)
class Settings:
    max_workers: int | None
    cancel_grace: float
    workflow: str | None


def _parse(name: str, convert: Callable[[str], T], default: T) -> T:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = convert(raw)
    except ValueError:
        raise ConfigError(f"{name}={raw!r} is not a valid {convert.__name__}") from None
    if value < 0 or (convert is int and value == 0):
        raise ConfigError(f"{name}={raw!r} must be positive")
    return value


def load_settings() -> Settings:
    """
    Read GATECI_* environment variables. CLI options override these.

    Raises:
        ConfigError: a variable is set to an unusable value
    """
    return Settings(
        max_workers=_parse("GATECI_MAX_WORKERS", int, None),
        cancel_grace=_parse("GATECI_CANCEL_GRACE", float, DEFAULT_CANCEL_GRACE),
        workflow=os.environ.get("GATECI_WORKFLOW") or None,
    )
