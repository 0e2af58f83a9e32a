"""Cryptographic and helper utilities."""
