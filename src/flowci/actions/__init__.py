"""Builtin action registry.

``uses: owner/name@version`` resolves by name; the version suffix is kept on
the step for display but does not select a different implementation.
"""

from __future__ import annotations

from typing import Dict, List, TypeVar

from ..errors import DefinitionError
from .base import Action, ActionOutcome

_REGISTRY: Dict[str, Action] = {}

A = TypeVar("A")


def register(cls: type[A]) -> type[A]:
    """Class decorator: instantiate the action and index it under `cls.name`."""
    instance = cls()
    _REGISTRY[instance.name] = instance  # type: ignore[attr-defined]
    return cls


def resolve(uses: str) -> Action:
    name = uses.strip().partition("@")[0]
    try:
        return _REGISTRY[name]
    except KeyError:
        raise DefinitionError(
            f"Unknown action '{uses}'. Builtin actions: {', '.join(known_actions())}"
        ) from None


def known_actions() -> List[str]:
    return sorted(_REGISTRY)


# populate the registry
from . import artifacts, cache, checkout, docker, setup, trivy  # noqa: E402,F401

__all__ = ["Action", "ActionOutcome", "known_actions", "register", "resolve"]
