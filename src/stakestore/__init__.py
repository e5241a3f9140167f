"""StakeStore: custodial staking into Pendle principal/yield token markets."""

__version__ = "0.1.0"
