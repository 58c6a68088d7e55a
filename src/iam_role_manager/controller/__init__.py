"""Reconciliation controller for declared IAM roles."""
