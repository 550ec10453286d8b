"""Core types shared across layers."""
