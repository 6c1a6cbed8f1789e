"""Checkout payment reconciliation service."""
