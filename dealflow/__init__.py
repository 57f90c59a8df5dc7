"""Dealflow: AI-assisted investment assessments, cited chat answers, and blind IC voting."""

__version__ = "0.1.0"
