"""Kernel services: monotonic sequences and fiscal period control."""
