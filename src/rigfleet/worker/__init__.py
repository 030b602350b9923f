"""Worker sandboxes, lifecycle, completion and teardown."""
