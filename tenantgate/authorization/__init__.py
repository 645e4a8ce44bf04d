"""Authorization framework for tenantgate.

This package decides whether a principal may perform a storage or key action
on a resource, separating the decision from the storage and key operations
themselves.

The framework consists of:
- Authorization providers: Implementations that make authorization decisions
- Access gateway: Routes requests to the configured provider, logs and audits
  every decision
- Request/Decision dataclasses: Standard format for authorization decisions
"""
