"""
Reaction scope used to stop the dispatcher from reacting to its own writes.

A scope is created once per unit of work (one hook call, one feed publish) and
handed down explicitly: dispatcher -> preference coercion -> change feed ->
dispatcher. Nothing is stored in thread-locals or module globals.
"""

from collections.abc import Iterator
from contextlib import contextmanager


class ReactionScope:
    """Depth counter for nested reactions within one unit of work."""

    def __init__(self):
        self.depth = 0

    def guarded(self) -> bool:
        return self.depth > 0

    @contextmanager
    def enter(self) -> Iterator["ReactionScope"]:
        self.depth += 1
        try:
            yield self
        finally:
            self.depth -= 1

    def __repr__(self) -> str:
        return f"ReactionScope(depth={self.depth})"
