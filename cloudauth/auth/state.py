"""CSRF state generation for OAuth2 flows.

The state is embedded in the authorization request and echoed back in the
redirect, binding a callback to the flow that started it.
"""

from __future__ import annotations

import secrets
import string

from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator


#: Alphabet for generated states (62 symbols).
STATE_ALPHABET = string.ascii_letters + string.digits


class StateGenerator(ABC):
    """Source of per-flow CSRF state strings."""

    @abstractmethod
    def generate(self) -> str:
        """Return a new state string.

        Returns
        -------
        str
            A state that has not been handed out before.
        """


class SecureStateGenerator(StateGenerator):
    """Cryptographically secure alphanumeric states.

    Parameters
    ----------
    length : int
        Number of characters (default 32, about 190 bits of entropy).
    """

    def __init__(self, length: int = 32) -> None:
        """Initialize the generator."""
        if length < 16:
            msg = f"State length must be at least 16 characters, got {length}"
            raise ValueError(msg)
        self.length = length

    def generate(self) -> str:
        """Draw a fresh state from the system CSPRNG."""
        return "".join(secrets.choice(STATE_ALPHABET) for _ in range(self.length))


class SequenceStateGenerator(StateGenerator):
    """Deterministic generator that replays a fixed sequence.

    Intended for tests and reproducible runs.

    Parameters
    ----------
    states : Iterable[str]
        The states to hand out, in order.
    """

    def __init__(self, states: Iterable[str]) -> None:
        """Initialize the generator."""
        self._states: Iterator[str] = iter(states)

    def generate(self) -> str:
        """Return the next state of the sequence."""
        try:
            return next(self._states)
        except StopIteration:
            msg = "State sequence exhausted"
            raise ValueError(msg) from None
