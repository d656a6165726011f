"""AI-assisted package analysis."""
