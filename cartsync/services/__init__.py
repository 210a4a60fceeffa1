"""Read-only services consumed by the cart engine."""
from .enrichment import ProductEnrichmentService

__all__ = ["ProductEnrichmentService"]
