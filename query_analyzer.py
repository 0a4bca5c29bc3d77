"""
Query Analyzer - Extracts scheme (entity) and section (category) hints from queries
Rules are plain data: two ordered tables, first match wins in each
"""
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from constants import ENTITY_RULES, CATEGORY_RULES


@dataclass(frozen=True)
class PatternRule:
    """A single regex rule mapping a match to a value"""
    pattern: str
    value: str
    regex: 're.Pattern' = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, 'regex', re.compile(self.pattern, re.IGNORECASE))

    def matches(self, text: str) -> bool:
        return self.regex.search(text) is not None


@dataclass(frozen=True)
class QueryHints:
    """Advisory hints extracted from a query; either may be absent"""
    entity_id: Optional[str] = None
    category_tag: Optional[str] = None

    @property
    def has_both(self) -> bool:
        return self.entity_id is not None and self.category_tag is not None

    @property
    def is_empty(self) -> bool:
        return self.entity_id is None and self.category_tag is None


def build_rules(pairs: Sequence[Tuple[str, str]]) -> List[PatternRule]:
    """Turn (pattern, value) pairs into compiled rules, keeping their order"""
    return [PatternRule(pattern, value) for pattern, value in pairs]


class QueryAnalyzer:
    """Maps free text to entity/category hints using ordered pattern tables"""

    def __init__(self, entity_rules: Optional[Sequence[Tuple[str, str]]] = None,
                 category_rules: Optional[Sequence[Tuple[str, str]]] = None):
        """
        Initialize analyzer

        Args:
            entity_rules: (pattern, entity_id) pairs; defaults to constants.ENTITY_RULES
            category_rules: (pattern, category_tag) pairs; defaults to constants.CATEGORY_RULES
        """
        self.entity_rules = build_rules(entity_rules if entity_rules is not None else ENTITY_RULES)
        self.category_rules = build_rules(category_rules if category_rules is not None else CATEGORY_RULES)

    @staticmethod
    def _first_match(rules: List[PatternRule], text: str) -> Optional[str]:
        for rule in rules:
            if rule.matches(text):
                return rule.value
        return None

    def analyze(self, query: str) -> QueryHints:
        """
        Extract hints from a query

        Args:
            query: User query text

        Returns:
            QueryHints with entity_id and/or category_tag (None when no rule matched)
        """
        return QueryHints(
            entity_id=self._first_match(self.entity_rules, query),
            category_tag=self._first_match(self.category_rules, query),
        )

    def matching_rules(self, query: str) -> Tuple[List[PatternRule], List[PatternRule]]:
        """
        Every rule that matches the query, in declaration order

        Useful for spotting queries where several rules compete and only
        table order decides the outcome.
        """
        return (
            [rule for rule in self.entity_rules if rule.matches(query)],
            [rule for rule in self.category_rules if rule.matches(query)],
        )
