"""
Fan-out of one operation across several server connections.

Each connection is processed independently: a failure on one connection is
recorded for that connection and processing continues with the next one.
Nothing is retried.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterable, List, Optional, TypeVar

from sso_admin.errors import SsoAdminError, translate

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class OperationResult(Generic[T]):
    """Outcome of an operation on one connection: a value or an error."""

    connection: Any
    value: Optional[T] = None
    error: Optional[SsoAdminError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class FanOutResult(Generic[T]):
    results: List[OperationResult[T]] = field(default_factory=list)

    @property
    def successes(self) -> List[OperationResult[T]]:
        return [r for r in self.results if r.ok]

    @property
    def failures(self) -> List[OperationResult[T]]:
        return [r for r in self.results if not r.ok]

    @property
    def ok(self) -> bool:
        return not self.failures

    def values(self) -> List[T]:
        return [r.value for r in self.successes]

    def raise_first(self) -> None:
        """Raise the first recorded error, if any."""
        for result in self.results:
            if result.error is not None:
                raise result.error

    def __iter__(self):
        return iter(self.results)

    def __len__(self):
        return len(self.results)


def fan_out(connections: Iterable[Any], operation: Callable[[Any], T],
            description: Optional[str] = None) -> FanOutResult[T]:
    """
    Run ``operation(connection)`` for every connection, in order.

    Args:
        connections: Server connections to target
        operation: Callable receiving one connection
        description: Operation name used in log messages

    Returns:
        FanOutResult with one OperationResult per connection
    """
    description = description or getattr(operation, '__name__', 'operation')
    outcome = FanOutResult()

    for connection in connections:
        try:
            value = operation(connection)
            outcome.results.append(OperationResult(connection, value=value))
        except Exception as e:
            error = translate(e, description)
            logger.error(f"{description} failed on {connection}: {error}")
            outcome.results.append(OperationResult(connection, error=error))

    logger.info(f"{description}: {len(outcome.successes)} succeeded, "
                f"{len(outcome.failures)} failed across {len(outcome)} connection(s)")
    return outcome
