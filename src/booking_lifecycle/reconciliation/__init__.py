"""Reconciliation of local bookings against external calendars."""

from booking_lifecycle.reconciliation.conflict_scanner import ConflictScanner

__all__ = ["ConflictScanner"]
