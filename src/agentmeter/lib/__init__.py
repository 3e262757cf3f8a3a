"""Shared utilities for agentmeter modules."""
