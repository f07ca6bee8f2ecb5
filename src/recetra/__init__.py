"""
RECETRA - Official receipt issuance and verification.

This package provides the receipt lifecycle engine used by student
organization treasurers:
- Receipt issuance with unique numbers and verification tokens
- Independent payment, email and SMS delivery tracking
- Verification of receipts from their QR payload
- Receipt statistics and a management CLI
"""

__version__ = "0.1.0"


def get_version() -> str:
    """Get RECETRA version."""
    return __version__
