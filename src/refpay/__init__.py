"""Solana Pay merchant backend: payment references, transaction requests and reconciliation."""

__version__ = "0.1.0"
