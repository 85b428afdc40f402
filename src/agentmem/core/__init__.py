"""Core types, configuration, exceptions and utilities for agentmem."""
