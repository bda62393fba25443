"""
POSPlus Licensing

Offline license issuance and validation: signed license artifacts bound to a
machine's hardware fingerprint, a feature tier and an expiration date, with a
distributable revocation list.
"""

__version__ = "1.0.0"
