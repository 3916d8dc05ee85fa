"""Exception types shared across the backend."""


class ContractViolation(AssertionError):
    """Raised when a caller breaks one of the pose graph's usage contracts.

    These are programming errors (unregistered ids, re-entrant optimization
    triggers, finishing a submap twice, ...), not recoverable conditions.
    """


class ConstraintBuilderError(RuntimeError):
    """Raised when an asynchronous scan-matching job failed."""


def check(condition: bool, message: str, *args) -> None:
    if not condition:
        raise ContractViolation(message % args if args else message)
