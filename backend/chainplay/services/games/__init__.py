"""Turn engine services: matching, turn lifecycle, moderation, rotation and expirations.

This package holds the game rules. HTTP routes, socket handlers and the
background workers import from here and keep transport concerns out.
"""
