"""Service package: booking persistence, lifecycle, recurring, payment and listing services."""
