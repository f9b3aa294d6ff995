"""
Sahl Setup - provisions read-only monitoring credentials for Sahl
in AWS and Azure accounts.
"""

__version__ = "1.0.0"
