"""GreenTrace CLI - lineage tracing and mass-balance checks over snapshots."""
from .main import app, main

__all__ = ["app", "main"]
