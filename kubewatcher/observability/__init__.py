"""Logging and metrics for kubewatcher."""
