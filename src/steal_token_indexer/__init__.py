"""Steal Token Indexer - projects on-chain steal_token program events into a relational store."""

__version__ = "0.1.0"
