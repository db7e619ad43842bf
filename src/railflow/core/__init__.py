# src/railflow/core/__init__.py
"""Core infrastructure: configuration, logging, graphs, canonical hashing, run ledger."""
