"""Errors raised synchronously to API and MCP callers."""
from __future__ import annotations


class DealflowError(Exception):
    """Base class for caller-facing errors. ``status_code`` maps to HTTP."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(DealflowError):
    status_code = 404


class PermissionDenied(DealflowError):
    status_code = 403


class InvalidRequest(DealflowError):
    status_code = 400
