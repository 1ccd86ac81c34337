"""EVM interning indexer.

Ingests EVM blocks into a compact, id-interned relational schema and keeps
per-address activity statistics consistent across replays and reorgs.
"""

__version__ = "0.1.0"
