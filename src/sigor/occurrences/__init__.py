"""Occurrences, dispatches, and the status lifecycle that ties them together."""
