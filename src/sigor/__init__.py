"""SIGOR: integrated emergency occurrence management and dispatch."""

__version__ = "0.1.0"
