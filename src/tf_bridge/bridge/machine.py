"""Explicit task state machines and cooperative cancellation."""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Generic, Mapping, TypeVar

from tf_bridge.errors import InvalidTransition

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=Enum)


class StateMachine(Generic[S]):
    """Track a task's state against an exhaustive transition table.

    Args:
        name: Task name used in log and error messages.
        transitions: Allowed successors for every state. Terminal states
            map to an empty set.
        initial: Starting state.
    """

    def __init__(
        self,
        name: str,
        transitions: Mapping[S, frozenset[S]],
        initial: S,
    ) -> None:
        self.name = name
        self._transitions = transitions
        self.state = initial
        self.history: list[S] = [initial]

    @property
    def terminal(self) -> bool:
        return not self._transitions[self.state]

    def can_advance(self, new_state: S) -> bool:
        return new_state in self._transitions[self.state]

    def advance(self, new_state: S) -> None:
        """Move to *new_state*.

        Raises:
            InvalidTransition: The table does not allow the move.
        """
        if not self.can_advance(new_state):
            raise InvalidTransition(
                f"{self.name}: cannot move from {self.state.value} to "
                f"{new_state.value}",
                task=self.name,
            )
        logger.debug(
            "%s: %s -> %s", self.name, self.state.value, new_state.value
        )
        self.state = new_state
        self.history.append(new_state)


class CancellationToken:
    """Cooperative cancellation flag checked between commits / changesets.

    Safe to set from another thread; tasks only observe it at their
    checkpoints, never in the middle of a remote transaction.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
