"""Terminal session host adapters."""
