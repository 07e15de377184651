"""Shift aggregation and PDF reports."""
