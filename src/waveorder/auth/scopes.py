"""Scope catalogue and matching rules."""

from __future__ import annotations

from collections.abc import Iterable
from enum import StrEnum

WILDCARD = "*"


class Scope(StrEnum):
    PRODUCTS_READ = "products:read"
    PRODUCTS_WRITE = "products:write"
    ORDERS_READ = "orders:read"
    CATEGORIES_READ = "categories:read"
    CATEGORIES_WRITE = "categories:write"
    SERVICES_READ = "services:read"
    SERVICES_WRITE = "services:write"
    APPOINTMENTS_READ = "appointments:read"
    APPOINTMENTS_WRITE = "appointments:write"


AVAILABLE_SCOPES: tuple[dict[str, str], ...] = (
    {"id": Scope.PRODUCTS_READ, "name": "Read Products",
     "description": "View products and inventory"},
    {"id": Scope.PRODUCTS_WRITE, "name": "Write Products",
     "description": "Create, update, delete products"},
    {"id": Scope.ORDERS_READ, "name": "Read Orders",
     "description": "View orders and order history"},
    {"id": Scope.CATEGORIES_READ, "name": "Read Categories",
     "description": "View categories"},
    {"id": Scope.CATEGORIES_WRITE, "name": "Write Categories",
     "description": "Create, update, delete categories"},
    {"id": Scope.SERVICES_READ, "name": "Read Services",
     "description": "View salon services"},
    {"id": Scope.SERVICES_WRITE, "name": "Write Services",
     "description": "Create, update, delete salon services"},
    {"id": Scope.APPOINTMENTS_READ, "name": "Read Appointments",
     "description": "View appointments"},
    {"id": Scope.APPOINTMENTS_WRITE, "name": "Write Appointments",
     "description": "Book, reschedule, cancel appointments"},
)

DEFAULT_SCOPES: tuple[Scope, ...] = (
    Scope.PRODUCTS_READ,
    Scope.ORDERS_READ,
    Scope.CATEGORIES_READ,
)


def has_scope(granted: Iterable[str], required: str) -> bool:
    """Check whether ``required`` is covered by the granted scopes.

    Exact match, ``<resource>:*`` and the global ``*`` all grant access.
    """
    granted_set = set(granted)
    if required in granted_set or WILDCARD in granted_set:
        return True
    resource, _, _ = required.partition(":")
    return f"{resource}:{WILDCARD}" in granted_set


def filter_scopes(requested: Iterable[str] | None) -> list[str]:
    """Keep known scopes in request order, dropping unknowns and duplicates.

    Wildcards are honored by ``has_scope`` but never issued.
    """
    valid = {s.value for s in Scope}
    selected: list[str] = []
    for scope in requested or ():
        if scope in valid and scope not in selected:
            selected.append(scope)
    return selected


def normalize_scopes(requested: Iterable[str] | None) -> list[str]:
    """Keep known scopes in request order; fall back to defaults if none remain."""
    return filter_scopes(requested) or [s.value for s in DEFAULT_SCOPES]
