"""VulnScan - non-destructive DAST engine."""

__version__ = "2.0.0"
