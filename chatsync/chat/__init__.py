"""Conversation reconstruction: normalization, tree extraction, buffering and the store."""
