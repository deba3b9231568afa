from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)


class VariantMappingError(LookupError):
    pass


class VariantMapping(BaseModel):
    product_id: str = Field(min_length=1)
    variant_id: int | None = None
    variant_option_ids: list[int] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_provider_variant(self) -> "VariantMapping":
        if self.variant_id is None and not self.variant_option_ids:
            raise ValueError("Either variant_id or variant_option_ids is required")
        return self

    @property
    def provider_variant_id(self) -> int:
        if self.variant_id is not None:
            return self.variant_id
        return self.variant_option_ids[0]


class VariantMap:
    """Read-only storefront variant id -> fulfillment product/variant table."""

    def __init__(self, entries: dict[int, VariantMapping]) -> None:
        self._entries = dict(entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, variant_id: object) -> bool:
        return variant_id in self._entries

    def resolve(self, variant_id: int) -> VariantMapping:
        mapping = self._entries.get(variant_id)
        if mapping is None:
            raise VariantMappingError(f"No fulfillment mapping found for variant ID {variant_id}")
        return mapping

    @classmethod
    def from_dict(cls, raw: object) -> "VariantMap":
        if not isinstance(raw, dict):
            raise ValueError("Variant map must be a JSON object keyed by variant id")
        entries: dict[int, VariantMapping] = {}
        for key, value in raw.items():
            try:
                variant_id = int(key)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Variant map key {key!r} is not an integer variant id") from exc
            try:
                entries[variant_id] = VariantMapping.model_validate(value)
            except ValidationError as exc:
                raise ValueError(f"Invalid variant map entry for {key}: {exc}") from exc
        return cls(entries)

    @classmethod
    def load(cls, path: str | Path) -> "VariantMap":
        source = Path(path)
        try:
            raw = json.loads(source.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ValueError(f"Variant map file not found: {source}") from exc
        except json.JSONDecodeError as exc:
            raise ValueError(f"Variant map file is not valid JSON: {source}") from exc
        variant_map = cls.from_dict(raw)
        logger.info("Loaded variant map", extra={"path": str(source), "entries": len(variant_map)})
        return variant_map
