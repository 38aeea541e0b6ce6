"""RAMPART HTTP adapter."""
