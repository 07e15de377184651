"""Occurrence and vehicle chat rooms."""
