"""Filter predicate engine.

Maps named filters (``language``, ``wordCount``, ``contentType`` ...) with
their parameters to boolean predicates over aggregate records, and combines
several filters into one predicate.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from services.shared.errors import FailedPreconditionError

logger = logging.getLogger(__name__)

Predicate = Callable[[Mapping[str, Any]], bool]
FieldPredicate = Callable[[Any], bool]
PredicateBuilder = Callable[[Any], FieldPredicate]

MISSPELLED_EXCLUSIVE = 'exlusive'


class FilterKind(str, Enum):
    """Known filter names."""
    LANGUAGE = "language"
    DISCOVERY_PATH = "discoveryPath"
    RECORD_TYPE = "recordType"
    CONTENT_TYPE = "contentType"
    REQUESTED_URI = "requestedUri"
    LIX = "lix"
    CHARACTER_COUNT = "characterCount"
    LONG_WORD_COUNT = "longWordCount"
    SENTENCE_COUNT = "sentenceCount"
    WORD_COUNT = "wordCount"
    MATCH_REGEXP = "matchRegexp"
    UNIMPLEMENTED = "unimplemented"

    @classmethod
    def from_name(cls, name: str) -> 'FilterKind':
        try:
            kind = cls(name)
        except ValueError:
            return cls.UNIMPLEMENTED
        return kind


@dataclass(frozen=True)
class Filter:
    """A named predicate with its parameter."""
    name: str
    value: Any = None
    field: Optional[str] = None
    exclusive: bool = False

    @property
    def target(self) -> str:
        """Record attribute the filter is applied to."""
        return self.field or self.name

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Filter':
        """Create a Filter from a stored document.

        Accepts the legacy ``exlusive`` spelling with a warning.
        """
        if 'name' not in data:
            raise FailedPreconditionError(f"Filter is missing a name: {dict(data)}")

        exclusive = data.get('exclusive')
        if exclusive is None and MISSPELLED_EXCLUSIVE in data:
            logger.warning(f"Filter '{data['name']}' uses misspelled flag '{MISSPELLED_EXCLUSIVE}', "
                           f"treating it as 'exclusive'")
            exclusive = data[MISSPELLED_EXCLUSIVE]
        if exclusive is None:
            exclusive = False
        if not isinstance(exclusive, bool):
            raise FailedPreconditionError(
                f"Filter '{data['name']}' has a non-boolean exclusive flag: {exclusive!r}"
            )

        return cls(
            name=data['name'],
            value=data.get('value'),
            field=data.get('field'),
            exclusive=exclusive,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {'name': self.name, 'value': self.value}
        if self.field:
            result['field'] = self.field
        if self.exclusive:
            result['exclusive'] = True
        return result


@dataclass
class FilterSet:
    """Time bounded bundle of filters scoped to one seed."""
    id: str
    seed_id: str
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    filters: List[Filter] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'FilterSet':
        return cls(
            id=data['id'],
            seed_id=data.get('seedId', data['id']),
            valid_from=data.get('validFrom'),
            valid_to=data.get('validTo'),
            filters=[Filter.from_dict(f) for f in data.get('filters') or []],
        )


# Predicate builders: params -> field value -> bool

def some_in_array_equals(values: Sequence[Any]) -> FieldPredicate:
    return lambda field_value: any(field_value == value for value in values)


def some_in_array_is_prefix_of(prefixes: Sequence[str]) -> FieldPredicate:
    return lambda field_value: any(field_value.startswith(prefix) for prefix in prefixes)


def in_closed_interval(bounds: Sequence[float]) -> FieldPredicate:
    lower_bound, upper_bound = bounds
    return lambda number: lower_bound <= number <= upper_bound


def match_regexp(pattern: str) -> FieldPredicate:
    compiled = re.compile(pattern)
    return lambda field_value: compiled.search(field_value) is not None


class FilterEngine:
    """Builds record predicates from filters."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def resolve(self, name: str) -> PredicateBuilder:
        """Return the predicate builder for a filter name.

        Unknown names resolve to a permissive builder so an unimplemented
        filter never blocks data.
        """
        kind = FilterKind.from_name(name)

        if kind in (FilterKind.LANGUAGE, FilterKind.DISCOVERY_PATH, FilterKind.RECORD_TYPE):
            return some_in_array_equals
        if kind in (FilterKind.CONTENT_TYPE, FilterKind.REQUESTED_URI):
            return some_in_array_is_prefix_of
        if kind in (FilterKind.LIX, FilterKind.CHARACTER_COUNT, FilterKind.LONG_WORD_COUNT,
                    FilterKind.SENTENCE_COUNT, FilterKind.WORD_COUNT):
            return in_closed_interval
        if kind is FilterKind.MATCH_REGEXP:
            return match_regexp
        return self._unimplemented(name)

    def _unimplemented(self, name: str) -> PredicateBuilder:
        def builder(_params: Any) -> FieldPredicate:
            self.log.warning(f"filter named '{name}' is not implemented")
            return lambda _value: True
        return builder

    def build_predicate(self, filter_: Filter) -> Predicate:
        """Map one filter to a record predicate."""
        field_predicate = self.resolve(filter_.name)(filter_.value)
        target = filter_.target

        def predicate(record: Mapping[str, Any]) -> bool:
            matched = bool(field_predicate(record.get(target)))
            return not matched if filter_.exclusive else matched

        return predicate

    def build_predicates(self, filters: Iterable[Filter]) -> List[Predicate]:
        return [self.build_predicate(f) for f in filters]

    def combine(self, filters: Iterable[Filter]) -> Predicate:
        """AND all filters into one predicate, evaluated in the given order."""
        predicates = self.build_predicates(filters)

        def predicate(record: Mapping[str, Any]) -> bool:
            return all(p(record) for p in predicates)

        return predicate


default_engine = FilterEngine()


def resolve(name: str) -> PredicateBuilder:
    return default_engine.resolve(name)


def build_predicate(filter_: Filter) -> Predicate:
    return default_engine.build_predicate(filter_)


def combine(filters: Iterable[Filter]) -> Predicate:
    return default_engine.combine(filters)
