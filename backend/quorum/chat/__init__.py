"""Realtime chat core: registry, room fan-out, ingest and reconciliation."""
