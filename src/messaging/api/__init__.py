"""Messaging API module."""
