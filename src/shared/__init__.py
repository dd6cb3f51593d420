"""
Shared Layer - Cross-Cutting Concerns
Configuration, structured logging, error mapping, database plumbing and the in-process event bus.
"""
