"""Process wiring and worker runtime."""
