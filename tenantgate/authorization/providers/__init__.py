"""Authorization providers for tenantgate.

This package contains implementations of the AuthorizationProvider interface.

Available providers:
- policy: Identity, resource and key policy documents, explicit deny overrides
"""
