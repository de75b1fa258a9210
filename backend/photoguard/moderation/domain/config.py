"""Tenant-scoped moderation policy configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol

import yaml

from photoguard.moderation.domain.categories import DEFAULT_DETECT_CATEGORIES, Category, parse_category
from photoguard.moderation.domain.exceptions import InvalidModerationConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModerationConfig:
    """Policy parameters applied to a single scan."""

    confidence_threshold: float = 0.8
    auto_reject: bool = True
    detect_categories: frozenset[Category] = DEFAULT_DETECT_CATEGORIES
    detect_text: bool = True
    tenant_id: str | None = None

    def __post_init__(self) -> None:
        _check_threshold(self.confidence_threshold)
        object.__setattr__(self, "detect_categories", _coerce_categories(self.detect_categories))

    @property
    def min_confidence_percent(self) -> float:
        return self.confidence_threshold * 100


@dataclass(frozen=True)
class ConfigOverride:
    """Partial config supplied by a caller; ``None`` keeps the base value."""

    confidence_threshold: float | None = None
    auto_reject: bool | None = None
    detect_categories: frozenset[Category] | None = None
    detect_text: bool | None = None
    tenant_id: str | None = None

    def __post_init__(self) -> None:
        if self.confidence_threshold is not None:
            _check_threshold(self.confidence_threshold)
        if self.detect_categories is not None:
            object.__setattr__(self, "detect_categories", _coerce_categories(self.detect_categories))

    @staticmethod
    def from_mapping(data: Mapping[str, Any]) -> "ConfigOverride":
        known = {"confidence_threshold", "auto_reject", "detect_categories", "detect_text", "tenant_id"}
        unknown = set(data) - known
        if unknown:
            raise InvalidModerationConfig(f"unknown moderation config keys: {', '.join(sorted(unknown))}")
        categories = data.get("detect_categories")
        return ConfigOverride(
            confidence_threshold=_optional_float(data.get("confidence_threshold")),
            auto_reject=_optional_bool(data.get("auto_reject")),
            detect_categories=frozenset(categories) if categories is not None else None,
            detect_text=_optional_bool(data.get("detect_text")),
            tenant_id=str(data["tenant_id"]) if data.get("tenant_id") is not None else None,
        )


def merge_config(base: ModerationConfig, override: ConfigOverride | None) -> ModerationConfig:
    """Return ``base`` with every non-``None`` field of ``override`` applied."""

    if override is None:
        return base
    return ModerationConfig(
        confidence_threshold=(
            override.confidence_threshold if override.confidence_threshold is not None else base.confidence_threshold
        ),
        auto_reject=override.auto_reject if override.auto_reject is not None else base.auto_reject,
        detect_categories=(
            override.detect_categories if override.detect_categories is not None else base.detect_categories
        ),
        detect_text=override.detect_text if override.detect_text is not None else base.detect_text,
        tenant_id=override.tenant_id if override.tenant_id is not None else base.tenant_id,
    )


class TenantConfigProvider(Protocol):
    """Resolves the default moderation config for a tenant."""

    def get(self, tenant_id: str | None) -> ModerationConfig:
        ...


@dataclass
class StaticConfigProvider(TenantConfigProvider):
    """Config provider backed by a default plus per-tenant overrides."""

    default: ModerationConfig = field(default_factory=ModerationConfig)
    tenants: Mapping[str, ConfigOverride] = field(default_factory=dict)

    def get(self, tenant_id: str | None) -> ModerationConfig:
        if tenant_id is None:
            return self.default
        override = self.tenants.get(tenant_id)
        config = merge_config(self.default, override)
        return merge_config(config, ConfigOverride(tenant_id=tenant_id))

    @staticmethod
    def from_mapping(data: Mapping[str, Any]) -> "StaticConfigProvider":
        default_cfg = data.get("default") or {}
        tenants_cfg = data.get("tenants") or {}
        if not isinstance(default_cfg, Mapping) or not isinstance(tenants_cfg, Mapping):
            raise InvalidModerationConfig("moderation config must contain mappings for 'default' and 'tenants'")
        default = merge_config(ModerationConfig(), ConfigOverride.from_mapping(default_cfg))
        tenants: dict[str, ConfigOverride] = {}
        for tenant_id, tenant_cfg in tenants_cfg.items():
            if not isinstance(tenant_cfg, Mapping):
                raise InvalidModerationConfig(f"moderation config for tenant {tenant_id} must be a mapping")
            tenants[str(tenant_id)] = ConfigOverride.from_mapping(tenant_cfg)
        return StaticConfigProvider(default=default, tenants=tenants)


def load_moderation_config(path: str | Path | None) -> StaticConfigProvider:
    """Load tenant moderation config from a YAML file."""

    if path is None:
        return StaticConfigProvider()
    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning("moderation config file missing at %s; using defaults", path)
        return StaticConfigProvider()
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise InvalidModerationConfig(f"moderation config is not valid YAML: {exc}") from exc
    if not isinstance(data, Mapping):
        raise InvalidModerationConfig("moderation config root must be a mapping")
    return StaticConfigProvider.from_mapping(data)


def _check_threshold(value: float) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidModerationConfig(f"confidence_threshold must be a number, got {value!r}")
    if not 0.0 <= float(value) <= 1.0:
        raise InvalidModerationConfig(f"confidence_threshold must be within [0, 1], got {value}")


def _coerce_categories(values: Iterable[Any]) -> frozenset[Category]:
    if isinstance(values, (str, bytes)):
        raise InvalidModerationConfig("detect_categories must be a collection of category names")
    try:
        return frozenset(parse_category(value) for value in values)
    except ValueError as exc:
        raise InvalidModerationConfig(str(exc)) from exc


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidModerationConfig(f"confidence_threshold must be a number, got {value!r}") from exc


def _optional_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if not isinstance(value, bool):
        raise InvalidModerationConfig(f"expected a boolean, got {value!r}")
    return value
