from typing import Optional, Sequence

from .schema import WRAPPER_KINDS, Kind, Schema

# wrappers that only say whether a value may be left out
ABSENCE_KINDS = (Kind.OPTIONAL, Kind.DEFAULT)


def unwrap(node: Schema, kinds: Sequence[Kind] = WRAPPER_KINDS) -> Schema:
    """Strip wrapper nodes (optional, nullable and default by default)."""
    while node.kind in kinds:
        node = node.inner
    return node

def resolve_path(schema: Schema, dotted_path: str) -> Optional[Schema]:
    """Find the node a dotted field path points at, or None.

    Numeric segments index into arrays ("transactions.0.amount"). Unions
    are leaves: a path cannot continue through one. A nullable leaf is
    returned as is so that writing None to it stays valid.
    """
    node = schema
    for segment in dotted_path.split("."):
        node = unwrap(node)
        if node.kind is Kind.DOCUMENT:
            node = node.field(segment)
            if node is None:
                return None
        elif node.kind is Kind.ARRAY and segment.isdigit():
            node = node.element
        else:
            return None
    return unwrap(node, ABSENCE_KINDS)

def array_element(node: Optional[Schema]) -> Optional[Schema]:
    """Element node of an array-typed leaf, or None when it is not an array."""
    if node is None:
        return None
    node = unwrap(node)
    return node.element if node.kind is Kind.ARRAY else None
