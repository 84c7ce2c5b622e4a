"""Agent action lifecycle, execution queue and verification engine."""
