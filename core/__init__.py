"""Core application for the MamaCare client.

This package contains the credential store, the API gateway and the
session manager that owns the mobile client's authentication lifecycle.
"""
