"""AumOS Evidence Ledger: immutable multi-channel evidence capture and Mapping Gate admission control."""

__version__ = "0.1.0"
