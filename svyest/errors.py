"""
Error and warning types raised by svyest

Configuration problems are fatal and raised as ``ConfigurationError``.
Everything else is recovered locally, attached to the affected result rows
as diagnostics and surfaced through ``warnings.warn`` with one of the
warning categories below, so callers can filter or escalate them.
"""


class ConfigurationError(ValueError):
    """Invalid estimation request (unknown column, bad option, name collision)"""


class DataQualityWarning(UserWarning):
    """Data was excluded or a domain is empty or too small to trust"""


class MethodFallbackWarning(UserWarning):
    """A requested resampling method could not run; linearization was used"""


class DomainMismatchWarning(UserWarning):
    """Two estimate tables do not cover the same domains"""
