"""Order reconciliation and notification service for the storefront checkout."""

__version__ = "1.0.0"
