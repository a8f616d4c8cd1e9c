"""Callback dispatch: the handler registry and the built-in entity handlers."""
