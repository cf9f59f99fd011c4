"""Errors raised while reconciling contact identities."""


class IdentityError(Exception):
    """Base class for reconciliation failures."""


class InvalidRequest(IdentityError):
    """Neither email nor phoneNumber was supplied."""


class RepositoryError(IdentityError):
    """The contact store could not complete a read or write."""


class InternalError(IdentityError):
    """A request failed for a reason the caller cannot fix."""
