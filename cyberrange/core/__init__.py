"""Core types, exceptions and helpers shared by all Cyber Range layers."""
