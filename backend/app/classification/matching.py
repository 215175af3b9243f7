"""
Two-tier type-name matcher.

The classifier's output vocabulary is not guaranteed to equal any stored
type name, so resolution is:

  tier 1  exact match after case folding and whitespace collapsing
  tier 2  containment in either direction
  else    NoMatch  (caller falls back to the catch-all type)

Candidates are scanned in the order given; the first hit of a tier wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, Sequence, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class ExactMatch(Generic[T]):
    candidate: T


@dataclass(frozen=True)
class FuzzyMatch(Generic[T]):
    candidate: T


@dataclass(frozen=True)
class NoMatch:
    query: str | None


MatchResult = Union[ExactMatch[T], FuzzyMatch[T], NoMatch]


def normalize_name(name: str | None) -> str:
    return " ".join((name or "").split()).casefold()


def find_exact(name: str | None, candidates: Sequence[T], key: Callable[[T], str] = lambda c: c.name) -> T | None:
    """Tier 1 only; used where containment would be too loose."""
    wanted = normalize_name(name)
    if not wanted:
        return None
    for candidate in candidates:
        if normalize_name(key(candidate)) == wanted:
            return candidate
    return None


def match_type_name(
    name: str | None,
    candidates: Sequence[T],
    key: Callable[[T], str] = lambda c: c.name,
) -> MatchResult:
    """Resolve *name* against *candidates*; see module docstring."""
    wanted = normalize_name(name)
    if not wanted:
        return NoMatch(name)

    exact = find_exact(name, candidates, key)
    if exact is not None:
        return ExactMatch(exact)

    for candidate in candidates:
        stored = normalize_name(key(candidate))
        if stored and (wanted in stored or stored in wanted):
            return FuzzyMatch(candidate)

    return NoMatch(name)
