"""
SecureGate -- authentication & compliance audit core.

Library-level component that owns the current authenticated identity on
a device, PIN-gated quick re-authentication, the inactivity session
timer, and the incrementally-synced security audit trail.
"""

__version__ = "1.0.0"
