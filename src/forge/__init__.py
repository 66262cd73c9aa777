"""recordforge kernel utilities."""

from .canonical import CanonicalJsonTypeError, canonical_dumps, clone, config_hash, jsonable

__all__ = [
    "CanonicalJsonTypeError",
    "canonical_dumps",
    "clone",
    "config_hash",
    "jsonable",
]
