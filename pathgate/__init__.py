"""
Secret-path access gate in front of one or more HTTP backends.

A client IP unlocks an application by visiting its secret path; the unlock is
a TTL'd key in Redis so any number of gate instances can share it.
"""

__version__ = "0.1.0"
