"""Snapshot publishing API (FastAPI)."""
