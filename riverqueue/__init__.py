"""Job queue client core: configuration, worker registry, job insertion, event subscriptions and status monitoring."""

__version__ = "0.1.0"