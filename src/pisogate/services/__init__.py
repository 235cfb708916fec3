"""Service layer for the hotspot core."""
