"""Identifier interning registry."""

from evm_indexer.registry.registry import IdentifierRegistry, validate_raw_value

__all__ = [
    "IdentifierRegistry",
    "validate_raw_value",
]
