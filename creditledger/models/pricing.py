"""
Persona Pricing
===============

Per-persona session pricing, loaded from a YAML (or JSON) file at startup.

File shape::

    personas:
      - id: coach-1
        name: Fitness Coach
        per_minute_rate: 10

Every persona must carry a positive integer ``per_minute_rate``; a missing
or zero rate fails the whole load with PricingConfigError, so the meter never
runs a session against an unpriced persona.
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from cachetools import TTLCache
from pydantic import BaseModel, Field, ValidationError

from creditledger.core.errors import PricingConfigError

logger = logging.getLogger(__name__)


class PersonaPricing(BaseModel):
    id: str = Field(min_length=1)
    name: str = ""
    per_minute_rate: int = Field(gt=0)

    model_config = {"frozen": True}


class PricingFile(BaseModel):
    personas: List[PersonaPricing]


def load_pricing(path: str) -> Dict[str, PersonaPricing]:
    """Parse and validate a pricing file. Raises PricingConfigError on any problem."""
    p = Path(path)
    try:
        raw_text = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise PricingConfigError(detail=f"Cannot read pricing file {path}: {exc}") from exc

    try:
        raw = json.loads(raw_text) if p.suffix == ".json" else yaml.safe_load(raw_text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise PricingConfigError(detail=f"Cannot parse pricing file {path}: {exc}") from exc

    try:
        parsed = PricingFile.model_validate(raw or {})
    except ValidationError as exc:
        raise PricingConfigError(
            detail=f"Invalid pricing file {path}: {exc.error_count()} error(s)",
            context={"errors": [e["loc"] for e in exc.errors()]},
        ) from exc

    personas: Dict[str, PersonaPricing] = {}
    for persona in parsed.personas:
        if persona.id in personas:
            raise PricingConfigError(detail=f"Duplicate persona id {persona.id!r} in {path}")
        personas[persona.id] = persona
    return personas


class PricingCatalog:
    """Validated persona pricing with a TTL cache in front of lookups.

    The cache is supplied by the caller so its lifetime and size follow the
    application that owns it.
    """

    def __init__(self, path: str, cache: Optional[TTLCache] = None):
        self._path = path
        self._cache = cache if cache is not None else TTLCache(maxsize=256, ttl=300)
        self._personas: Dict[str, PersonaPricing] = {}

    def load(self) -> "PricingCatalog":
        self._personas = load_pricing(self._path)
        self._cache.clear()
        logger.info("persona_pricing_loaded", extra={"count": len(self._personas), "path": self._path})
        return self

    def get(self, avatar_id: str) -> PersonaPricing:
        cached = self._cache.get(avatar_id)
        if cached is not None:
            return cached
        persona = self._personas.get(avatar_id)
        if persona is None:
            raise PricingConfigError(
                detail=f"No pricing configured for persona {avatar_id!r}",
                context={"avatar_id": avatar_id},
            )
        self._cache[avatar_id] = persona
        return persona

    def all(self) -> List[PersonaPricing]:
        return list(self._personas.values())

    def __len__(self) -> int:
        return len(self._personas)
