"""healthchain-access: patient record access control and break-glass authorization."""

__version__ = "0.1.0"
