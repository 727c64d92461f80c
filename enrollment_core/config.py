"""Configuration management for the enrollment core."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

from .phone import DEFAULT_COUNTRY_CODE

DEFAULT_MAX_SEATS = 15
DEFAULT_ROLE_IDS: Dict[str, int] = {"unassigned": 1, "mentor": 3, "student": 4, "admin": 5}


def _as_mapping(data: object, section: str) -> Mapping[str, object]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"Configuration section '{section}' must be a mapping")
    return data


def _positive_int(value: object, name: str, *, allow_zero: bool = False) -> int:
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{name}' must be an integer") from exc
    if number < 0 or (number == 0 and not allow_zero):
        raise ValueError(f"'{name}' must be {'zero or ' if allow_zero else ''}positive")
    return number


def _country_code(value: object, name: str) -> str:
    code = str(value).strip()
    if not code.isdigit() or len(code) > 3:
        raise ValueError(f"'{name}' must be one to three digits")
    return code


def _non_negative_float(value: object, name: str) -> float:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{name}' must be a number") from exc
    if number < 0:
        raise ValueError(f"'{name}' must not be negative")
    return number


@dataclass(frozen=True)
class RecordStoreSettings:
    """Connection details for the content-management record store."""

    base_url: str = "http://localhost:1337"
    token: Optional[str] = None
    timeout: float = 15.0
    page_size: int = 100
    locale: str = "pt-BR"

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "RecordStoreSettings":
        defaults = RecordStoreSettings()
        base_url = str(data.get("base_url", defaults.base_url)).strip().rstrip("/")
        if not base_url:
            raise ValueError("record_store.base_url must not be empty")
        token = data.get("token")
        return RecordStoreSettings(
            base_url=base_url,
            token=str(token).strip() or None if token is not None else None,
            timeout=_non_negative_float(data.get("timeout", defaults.timeout), "record_store.timeout"),
            page_size=_positive_int(data.get("page_size", defaults.page_size), "record_store.page_size"),
            locale=str(data.get("locale", defaults.locale)),
        )


@dataclass(frozen=True)
class EnrollmentSettings:
    """Seat limits and phone conventions."""

    max_seats: int = DEFAULT_MAX_SEATS
    country_code: str = DEFAULT_COUNTRY_CODE
    role_ids: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_ROLE_IDS))

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "EnrollmentSettings":
        defaults = EnrollmentSettings()
        country_code = _country_code(data.get("country_code", defaults.country_code), "enrollment.country_code")
        role_ids = dict(defaults.role_ids)
        raw_roles = _as_mapping(data.get("role_ids"), "enrollment.role_ids")
        for role, role_id in raw_roles.items():
            if role not in role_ids:
                raise ValueError(f"Unknown role '{role}' in enrollment.role_ids")
            role_ids[role] = _positive_int(role_id, f"enrollment.role_ids.{role}")
        return EnrollmentSettings(
            max_seats=_positive_int(
                data.get("max_seats", defaults.max_seats), "enrollment.max_seats", allow_zero=True
            ),
            country_code=country_code,
            role_ids=role_ids,
        )


@dataclass(frozen=True)
class ImportSettings:
    """Batching, timeout and retry limits for roster imports."""

    max_per_request: int = 20
    batch_size: int = 10
    batch_delay: float = 1.0
    request_timeout: float = 30.0
    max_retries: int = 3
    retry_backoff: float = 1.0

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "ImportSettings":
        defaults = ImportSettings()
        return ImportSettings(
            max_per_request=_positive_int(
                data.get("max_per_request", defaults.max_per_request), "imports.max_per_request"
            ),
            batch_size=_positive_int(data.get("batch_size", defaults.batch_size), "imports.batch_size"),
            batch_delay=_non_negative_float(
                data.get("batch_delay", defaults.batch_delay), "imports.batch_delay"
            ),
            request_timeout=_non_negative_float(
                data.get("request_timeout", defaults.request_timeout), "imports.request_timeout"
            ),
            max_retries=_positive_int(
                data.get("max_retries", defaults.max_retries), "imports.max_retries", allow_zero=True
            ),
            retry_backoff=_non_negative_float(
                data.get("retry_backoff", defaults.retry_backoff), "imports.retry_backoff"
            ),
        )


@dataclass(frozen=True)
class Settings:
    """Top-level configuration for the service and the CLI."""

    record_store: RecordStoreSettings = field(default_factory=RecordStoreSettings)
    enrollment: EnrollmentSettings = field(default_factory=EnrollmentSettings)
    imports: ImportSettings = field(default_factory=ImportSettings)
    api_tokens: Tuple[str, ...] = ()

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "Settings":
        tokens = data.get("api_tokens") or []
        if isinstance(tokens, str):
            tokens = tokens.split(",")
        if not isinstance(tokens, list):
            raise ValueError("api_tokens must be a list of strings")
        return Settings(
            record_store=RecordStoreSettings.from_dict(_as_mapping(data.get("record_store"), "record_store")),
            enrollment=EnrollmentSettings.from_dict(_as_mapping(data.get("enrollment"), "enrollment")),
            imports=ImportSettings.from_dict(_as_mapping(data.get("imports"), "imports")),
            api_tokens=tuple(str(token).strip() for token in tokens if str(token).strip()),
        )


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (Path(__file__).resolve().parent.parent / "config" / "enrollment.yaml").resolve(strict=False)
    return candidate


def _apply_environment(settings: Settings, environ: Mapping[str, str]) -> Settings:
    record_store = settings.record_store
    if environ.get("ENROLLMENT_STORE_URL"):
        record_store = replace(record_store, base_url=environ["ENROLLMENT_STORE_URL"].strip().rstrip("/"))
    if environ.get("ENROLLMENT_STORE_TOKEN"):
        record_store = replace(record_store, token=environ["ENROLLMENT_STORE_TOKEN"].strip())

    enrollment = settings.enrollment
    if environ.get("ENROLLMENT_MAX_SEATS"):
        enrollment = replace(
            enrollment,
            max_seats=_positive_int(environ["ENROLLMENT_MAX_SEATS"], "ENROLLMENT_MAX_SEATS", allow_zero=True),
        )
    if environ.get("ENROLLMENT_COUNTRY_CODE"):
        enrollment = replace(
            enrollment,
            country_code=_country_code(environ["ENROLLMENT_COUNTRY_CODE"], "ENROLLMENT_COUNTRY_CODE"),
        )

    api_tokens = settings.api_tokens
    raw_tokens = environ.get("ENROLLMENT_API_TOKENS")
    if raw_tokens:
        api_tokens = tuple(token.strip() for token in raw_tokens.split(",") if token.strip())

    return replace(settings, record_store=record_store, enrollment=enrollment, api_tokens=api_tokens)


def load_settings(
    config_path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load settings from an optional YAML file, then apply environment overrides."""
    env = os.environ if environ is None else environ
    path = config_path or resolve_config_path(env.get("ENROLLMENT_CONFIG"))

    raw: Mapping[str, object] = {}
    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            raw = _as_mapping(yaml.safe_load(handle), "root")
    elif config_path is not None:
        raise ValueError(f"Configuration file {config_path} does not exist")

    return _apply_environment(Settings.from_dict(raw), env)


__all__ = [
    "DEFAULT_MAX_SEATS",
    "DEFAULT_ROLE_IDS",
    "EnrollmentSettings",
    "ImportSettings",
    "RecordStoreSettings",
    "Settings",
    "load_settings",
    "resolve_config_path",
]
