"""Exceptions raised while replicating one table.

Everything below ``ReplicationError`` is caught at the pass boundary by the
swap coordinator and turned into a pass result; ``ConnectionFailed`` is the
one exception meant to travel up to the batch driver.
"""


class ReplicationError(Exception):
    """Base class for failures scoped to a single table pass."""


class SchemaError(ReplicationError):
    """Destination table or its columns could not be described."""


class InvalidMapping(ReplicationError):
    """Column mapping configuration is malformed for the destination table."""


class WriteError(ReplicationError):
    """An insert into the shadow table failed; the remaining rows are abandoned."""


class MergeError(ReplicationError):
    """Reading or re-applying kept data failed before promotion."""


class PromotionError(ReplicationError):
    """The shadow table could not be promoted to the live name."""

    def __init__(self, message: str, temp_name: str | None = None, fatal: bool = False):
        super().__init__(message)
        self.temp_name = temp_name
        self.fatal = fatal


class StoreError(ReplicationError):
    """A destination store statement failed at the driver level."""

    def __init__(self, message: str, statement: str | None = None):
        super().__init__(message)
        self.statement = statement


class ConnectionFailed(Exception):
    """A source or destination connection could not be established; fatal to the run."""
