"""Background-agent supervision and automated PR remediation."""

__version__ = "0.1.0"
