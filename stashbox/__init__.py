"""
Stashbox: multi-tenant file storage with plan quotas.
"""
