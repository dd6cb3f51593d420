"""Messaging domain: value objects, sender identities, events and errors."""
