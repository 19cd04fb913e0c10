"""
Fleet CLI module.

This module provides the ``fleet`` command line entry point.
"""
