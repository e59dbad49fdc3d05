"""Exception hierarchy for the replication pipeline."""

from __future__ import annotations


class ReplicationError(Exception):
    """Base class for every error raised while replicating an event."""


class DecodeError(ReplicationError):
    """Raised when a change envelope cannot be decoded."""


class UnresolvedKeyError(ReplicationError):
    """Raised when a row carries no value for any primary-key column."""


class SchemaIntrospectionError(ReplicationError):
    """Raised when the source catalog cannot describe a table."""


class DDLExecutionError(ReplicationError):
    """Raised when the target table cannot be checked, created or described."""


class MutationExecutionError(ReplicationError):
    """Raised when an INSERT/UPDATE/DELETE/UPSERT fails on the target."""


class MissingPredicateError(ReplicationError, ValueError):
    """Raised when an UPDATE or DELETE is requested without a WHERE row."""
