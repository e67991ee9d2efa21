from leadscout.keys import KeyRotationManager
from leadscout.models import LeadSource
from leadscout.sources.apify import ApifyActorSource
from leadscout.sources.base import SourceAdapter, SourceRegistry, SourceResult, capability_for
from leadscout.sources.maps import SerperMapsSource


def build_registry(keys: KeyRotationManager) -> SourceRegistry:
    """Registry with the maps source plus one Apify actor per other source."""
    registry = SourceRegistry([SerperMapsSource(keys)])
    for source in LeadSource:
        if source is not LeadSource.MAPS:
            registry.add(ApifyActorSource(source, keys))
    return registry


__all__ = [
    "ApifyActorSource",
    "SerperMapsSource",
    "SourceAdapter",
    "SourceRegistry",
    "SourceResult",
    "build_registry",
    "capability_for",
]
