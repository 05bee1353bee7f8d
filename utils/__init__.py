"""Shared helpers: configuration, errors, logging, dates and images."""
