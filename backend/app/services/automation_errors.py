"""Errors raised by the automation engine.

Safety rejections are not errors: a rejected rule is a normal skip outcome
and is logged, never raised.
"""


class AutomationError(Exception):
    """Base class for automation failures reported to the caller."""


class AutomationValidationError(AutomationError):
    """Bad input (unknown mode, missing home, invalid rule payload). Nothing was mutated."""


class NotFoundError(AutomationError):
    """A rule, log, home or device id does not exist."""


class UndoRejectedError(AutomationError):
    """The log exists but cannot be undone (not executed, already undone, expired, no inverse)."""
