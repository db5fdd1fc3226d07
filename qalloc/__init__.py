"""QAlloc - compute allocation sagas and pool capacity rebalancing."""

__version__ = "0.1.0"
