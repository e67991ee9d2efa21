"""Goal-driven lead discovery: race sources per location, filter/dedupe/score/enrich
results, and keep expanding the search until the requested lead count is met."""

__version__ = "0.1.0"
