"""kubewatcher -- resumable Kubernetes resource watcher with change notifications."""

__version__ = "0.3.0"
