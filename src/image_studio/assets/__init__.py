"""Asset naming and local image storage."""
