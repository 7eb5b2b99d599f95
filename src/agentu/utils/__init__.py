"""Shared utilities for AgentU."""
