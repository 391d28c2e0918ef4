from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, Field


class ConfigError(ValueError):
    pass


class EntityConfig(BaseModel):
    # Collection endpoint; may carry a "{company}" placeholder and be relative to BC_API_BASE
    destination_api_url: str
    # Separate read endpoint when lookups go through another page/API
    lookup_api_url: str | None = None
    # Payload fields tried in order to find the natural key
    key_fields: list[str] = Field(default_factory=lambda: ["no"])
    # Payload field -> remote field used in $filter (defaults to the same name)
    filter_fields: dict[str, str] = Field(default_factory=dict)
    # Remote field the fetched records are keyed by
    key_field: str = "no"
    expand: list[str] = Field(default_factory=list)
    ignored_fields: list[str] = Field(default_factory=lambda: ["skipDuplicateCheck"])
    keep_existing_values: dict[str, list[str]] = Field(default_factory=dict)
    fields_to_exclude_from_update: list[str] = Field(default_factory=list)
    skip_update_when: dict[str, list[str]] = Field(default_factory=dict)
    refetch_after_create: bool = False
    # Bound action name -> URL template with an "{id}" placeholder
    actions: dict[str, str] = Field(default_factory=dict)

    def filter_field(self, payload_field: str) -> str:
        return self.filter_fields.get(payload_field, payload_field)


class CompanyConfig(BaseModel):
    company_id: str | None = None
    entities: dict[str, EntityConfig] = Field(default_factory=dict)


class ConfigModel(BaseModel):
    companies: dict[str, CompanyConfig]


def load_config(path: str | Path = "bcsync.config.json") -> ConfigModel:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config file not found: {p}")
    data = json.loads(p.read_text(encoding="utf-8"))
    return ConfigModel.model_validate(data)


def company_config(cfg: ConfigModel, company: str) -> CompanyConfig:
    try:
        return cfg.companies[company]
    except KeyError:
        known = ", ".join(sorted(cfg.companies)) or "none"
        raise ConfigError(f"Unknown company {company!r} (configured: {known})") from None


def entity_config(cfg: ConfigModel, company: str, entity: str) -> EntityConfig:
    entities = company_config(cfg, company).entities
    try:
        return entities[entity]
    except KeyError:
        known = ", ".join(sorted(entities)) or "none"
        raise ConfigError(
            f"Unknown entity {entity!r} for company {company!r} (configured: {known})"
        ) from None
