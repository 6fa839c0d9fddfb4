"""
Tamper-evident token encryption.
"""
