"""Standalone stall monitor and reconciler process."""
