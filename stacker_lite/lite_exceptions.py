"""Exception hierarchy for the stacker_lite task engine.

Pure computation paths (rule parsing, intent resolution) raise these errors;
the projector and the controller are the places that catch them and degrade
to a logged no-op. Persistence failures are the only errors surfaced to the
caller for a user-visible retry.
"""


class StackerError(Exception):
    """Base exception for all stacker_lite errors."""


class RuleParseError(StackerError):
    """A recurrence rule string could not be parsed.

    Raised when:
    - FREQ is missing or not one of DAILY/WEEKLY/MONTHLY/YEARLY
    - INTERVAL or COUNT is not a positive integer
    - BYDAY is used outside of FREQ=WEEKLY or names an unknown weekday
    - UNTIL is malformed, or both UNTIL and COUNT are present
    """


class InvalidIntentError(StackerError):
    """A user intent cannot be applied to the given occurrence/master pair.

    Raised before any mutation plan is built, e.g. ``editFuture`` on a
    non-recurring task or an occurrence that belongs to another master.
    """


class StorageError(StackerError):
    """The repository failed to read or write the task document."""


class PersistenceError(StackerError):
    """The controller could not persist an applied mutation.

    The in-memory mutation is kept and the dataset is marked dirty; the
    next successful save (next mutation or an explicit flush) clears it.
    """
