"""Realtime thread chat status events over Redis pub/sub."""
