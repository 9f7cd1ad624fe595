"""Clinic front-desk coordination engine."""
