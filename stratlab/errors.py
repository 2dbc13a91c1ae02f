"""StratLab exception hierarchy.

Precondition failures are raised immediately and are distinct from
computational results.  Business failures inside a simulation (no cash,
no position) are never raised; they are recorded as skip records.
"""


class StratLabError(Exception):
    """Base class for all StratLab errors."""


class SimulationPreconditionError(StratLabError, ValueError):
    """A simulation or optimization was invoked without its inputs.

    Raised when no price data is loaded, when an empty asset list is
    passed to the multi-asset optimizer, or when the investment amount
    is not positive.
    """


class StrategyValidationError(StratLabError, ValueError):
    """A strategy definition is malformed.

    Raised by the loader when a node has an unknown kind or operation,
    missing or invalid parameters, or children on a leaf node.
    """
