"""
Core infrastructure: configuration, errors, logging, security, object store.
"""
