"""
Object type ordering for injection and cleanup.

Parents must be created before children and deleted after them. Types not in
the known order (custom objects) are appended after every known type in the
order they were first seen.
"""

from typing import Iterable, List, Sequence

from .exceptions import InvariantViolation

# Object injection order (respecting dependencies)
INJECTION_ORDER = [
    "Account",         # No dependencies
    "Contact",         # Depends on: Account
    "Lead",            # No dependencies
    "Campaign",        # No dependencies
    "Opportunity",     # Depends on: Account
    "Case",            # Depends on: Account, Contact (optional)
    "CampaignMember",  # Depends on: Campaign, Contact or Lead
    "Task",            # Depends on: Contact/Lead (WhoId), Opportunity/Account/Case (WhatId)
    "Event",           # Same as Task
    "EmailMessage",    # Depends on: Case (ParentId) or Opportunity (RelatedToId)
]


class DependencyGraph:
    """A fixed partial order over object types, flattened into a list."""

    def __init__(self, known_order: Sequence[str] = INJECTION_ORDER):
        if len(set(known_order)) != len(known_order):
            raise InvariantViolation(f"Dependency order lists a type more than once: {list(known_order)}")
        self.known_order = list(known_order)

    def order_for(self, object_types: Iterable[str]) -> List[str]:
        """Known types in dependency order, then unknown types in first-seen order."""
        unique: List[str] = []
        for object_type in object_types:
            if object_type not in unique:
                unique.append(object_type)

        ordered = [t for t in self.known_order if t in unique]
        remaining = [t for t in unique if t not in ordered]
        return ordered + remaining

    def reverse_order_for(self, object_types: Iterable[str]) -> List[str]:
        """Cleanup order: always the exact reversal of order_for()."""
        return list(reversed(self.order_for(object_types)))


default_graph = DependencyGraph()


def order_for(object_types: Iterable[str]) -> List[str]:
    return default_graph.order_for(object_types)


def reverse_order_for(object_types: Iterable[str]) -> List[str]:
    return default_graph.reverse_order_for(object_types)
