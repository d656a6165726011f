"""Score calculation and risk merging."""
