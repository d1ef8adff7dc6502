"""Verification continuity for rent roll uploads."""
