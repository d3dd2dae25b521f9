"""Core payment services: address derivation, transaction building, reconciliation."""
