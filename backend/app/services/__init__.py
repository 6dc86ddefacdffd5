"""Domain services: automation engine, collaborators and settings."""
