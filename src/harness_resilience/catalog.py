"""In-memory provider catalog."""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from harness_resilience.ports import ProviderCatalog
from harness_resilience.types import TargetKey

TierKey = str | tuple[str, str] | TargetKey


class StaticProviderCatalog(ProviderCatalog):
    """Catalog built from a ``{provider: [models...]}`` mapping.

    Declaration order is preserved and is the order every selection
    strategy uses to break ties.  ``tiers`` maps a model name to its tier;
    a ``(provider, model)`` pair or ``TargetKey`` overrides it for one
    provider only.
    """

    def __init__(
        self,
        models: Mapping[str, Sequence[str]],
        *,
        tiers: Mapping[TierKey, str] | None = None,
    ) -> None:
        self._models: dict[str, tuple[str, ...]] = {
            provider: tuple(dict.fromkeys(names)) for provider, names in models.items()
        }
        self._tiers: dict[str | tuple[str, str | None], str] = {}
        for key, tier in (tiers or {}).items():
            if isinstance(key, TargetKey):
                key = (key.provider, key.model)
            self._tiers[key] = tier

    def providers(self) -> list[str]:
        return list(self._models)

    def models(self, provider: str) -> list[str]:
        return list(self._models.get(provider, ()))

    def tier_of(self, provider: str, model: str | None) -> str | None:
        if model is None:
            return None
        return self._tiers.get((provider, model)) or self._tiers.get(model)

    def __contains__(self, provider: object) -> bool:
        return provider in self._models
