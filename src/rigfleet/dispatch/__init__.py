"""Dispatch (sling) orchestration."""
