"""
Ingredient-name matching strategies used when mapping a recipe template onto a store's
inventory.

The default policy is declared-order first match: an exact (case-insensitive) name match
wins; otherwise the first candidate whose name contains, or is contained in, the
ingredient name. Candidates are never scored, so the result only depends on the order in
which they are supplied.
"""

from typing import Callable, Generic, Iterable, Optional, Protocol, Tuple, TypeVar

T = TypeVar("T")

# 'exact' | 'substring'
MatchType = str


def normalize_name(name: Optional[str]) -> str:
    return " ".join((name or "").strip().lower().split())


class MatchingStrategy(Protocol[T]):
    def match(
        self, ingredient_name: str, candidates: Iterable[T]
    ) -> Optional[Tuple[T, MatchType]]:
        ...


class DeclaredOrderMatcher(Generic[T]):
    def __init__(self, name_of: Callable[[T], str]):
        self.name_of = name_of

    def match(self, ingredient_name: str, candidates: Iterable[T]) -> Optional[Tuple[T, MatchType]]:
        wanted = normalize_name(ingredient_name)
        if not wanted:
            return None
        ordered = list(candidates)

        for c in ordered:
            if normalize_name(self.name_of(c)) == wanted:
                return c, "exact"

        for c in ordered:
            have = normalize_name(self.name_of(c))
            if have and (wanted in have or have in wanted):
                return c, "substring"
        return None
