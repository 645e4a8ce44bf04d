from typing import Any, Optional


class TenantgateException(Exception):
    """Base class for all tenantgate exceptions"""

    _msg_fmt = "An unknown exception occurred."

    def __init__(self, message: Optional[str] = None, **kwargs: Any):
        if not message:
            message = self._msg_fmt % kwargs

        super().__init__(message)


class MalformedPolicy(TenantgateException):
    """A policy document failed schema or field validation.

    Fatal to loading that one policy only.
    """

    _msg_fmt = "Malformed policy for subject %(subject)s."

    def __init__(self, message: Optional[str] = None, subject: Optional[str] = None, **kwargs: Any):
        self.subject = subject
        super().__init__(message, subject=subject, **kwargs)


class PolicyNotFound(TenantgateException):
    _msg_fmt = "No policy attached to subject %(subject)s."

    def __init__(self, message: Optional[str] = None, subject: Optional[str] = None, **kwargs: Any):
        self.subject = subject
        super().__init__(message, subject=subject, **kwargs)


class AuditSinkUnavailable(TenantgateException):
    _msg_fmt = "Audit sink %(sink)s is unavailable."


class AccessDeniedError(TenantgateException):
    """Generic denial surfaced to a requester.

    Never carries policy detail; the diagnostic information stays in the
    :class:`~tenantgate.authorization.provider.Decision`.
    """

    _msg_fmt = "Access Denied"


class InvalidManifest(TenantgateException):
    _msg_fmt = "Invalid policy manifest %(path)s."
