"""Relationship graph between knowledge objects.

This module provides:
- Directed edges with denormalized endpoint types
- Filtered, paginated edge queries in either direction
- Deduplicating bulk insertion and sweeps on object delete
"""

from .models import Direction, Relationship, RelationshipCreate, RelationshipFilters, RelationshipPage
from .store import RelationshipGraph

__all__ = [
    "Direction",
    "Relationship",
    "RelationshipCreate",
    "RelationshipFilters",
    "RelationshipPage",
    "RelationshipGraph",
]
