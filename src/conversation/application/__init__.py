"""Application layer for the conversation inbox."""
