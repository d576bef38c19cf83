"""Core types, configuration and clocks."""
