"""Core pipeline components for pgconvert."""
