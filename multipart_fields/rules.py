from __future__ import annotations

import logging
from collections import deque
from enum import Enum
from typing import TYPE_CHECKING

from .multipart import parse_mime_type

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterable, Iterator, Sequence
    from typing import Any, TypeAlias

    MimePattern: TypeAlias = "tuple[str, str]"

# Get logger for this module.
logger = logging.getLogger(__name__)

DEFAULT_IN_MEMORY_LIMIT = 1 * 1024 * 1024
DEFAULT_FILE_LIMIT = 8 * 1024 * 1024

WILDCARD = "*"


class FieldKind(Enum):
    """How the data of a matched field is decoded."""

    TEXT = "text"
    RAW = "raw"
    FILE = "file"


class Repetition:
    """
    The number of entries a single rule may still accept: either a fixed
    count or unlimited.  ``Repetition()`` accepts exactly one entry.
    """

    def __init__(self, count: int | None = 1) -> None:
        if count is not None:
            if isinstance(count, bool) or not isinstance(count, int):
                raise TypeError("count must be an int or None, not %r" % (count,))
            if count < 1:
                logger.warning("A fixed repetition must be at least 1, not %d. Using 1 instead.", count)
                count = 1
        self._remaining = count

    @classmethod
    def fixed(cls, count: int) -> Repetition:
        return cls(count)

    @classmethod
    def unlimited(cls) -> Repetition:
        return cls(None)

    @property
    def remaining(self) -> int | None:
        """The entries left to accept, or None if unlimited."""
        return self._remaining

    @property
    def is_unlimited(self) -> bool:
        return self._remaining is None

    @property
    def is_exhausted(self) -> bool:
        return self._remaining == 0

    def consume(self) -> bool:
        """
        Account for one accepted entry.  Returns True if this repetition is
        now exhausted.
        """
        if self._remaining is None:
            return False
        if self._remaining == 0:
            raise ValueError("Repetition is already exhausted")

        self._remaining -= 1
        return self._remaining == 0

    def copy(self) -> Repetition:
        return Repetition(self._remaining)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Repetition):
            return self._remaining == other._remaining
        return NotImplemented

    def __repr__(self) -> str:
        if self._remaining is None:
            return f"{self.__class__.__name__}.unlimited()"
        return f"{self.__class__.__name__}.fixed({self._remaining})"


def parse_content_type_filter(value: str | Sequence[str]) -> MimePattern:
    """
    Turns a content type filter such as ``"image/*"`` or ``("image", "png")``
    into a lower-cased ``(type, subtype)`` pair.  Either side may be the
    ``*`` wildcard, and a lone ``"*"`` matches everything.
    """
    if isinstance(value, str):
        if value.strip() == WILDCARD:
            return (WILDCARD, WILDCARD)
        pattern = parse_mime_type(value)
        if pattern is None:
            raise ValueError("Invalid content type filter: %r" % value)
        return pattern

    parts = tuple(value)
    if len(parts) != 2 or not all(isinstance(p, str) and p.strip() for p in parts):
        raise ValueError("Invalid content type filter: %r" % (value,))
    return (parts[0].strip().lower(), parts[1].strip().lower())


def content_type_matches(declared: str | tuple[str, str] | None, filters: Sequence[MimePattern] | None) -> bool:
    """
    Checks a declared content type against a list of filters.  No filters
    always match; otherwise the first filter whose type and subtype are each
    either the wildcard or equal to the declared one matches.  A missing or
    unparseable declared type matches no filter.
    """
    if not filters:
        return True
    if declared is None:
        return False

    mime = declared if isinstance(declared, tuple) else parse_mime_type(declared)
    if mime is None:
        return False

    major, minor = mime
    for pattern_major, pattern_minor in filters:
        if pattern_major != WILDCARD and pattern_major != major:
            continue
        if pattern_minor != WILDCARD and pattern_minor != minor:
            continue
        return True
    return False


class FieldRule:
    """
    The constraints for one expected field: its name, how it is decoded, the
    most bytes it may carry, which content types it accepts and how many
    entries it may absorb.  Everything but the repetition is fixed once the
    rule is built.

    Use the :meth:`text`, :meth:`raw` and :meth:`file` constructors to get the
    default size limits (1 MiB in memory, 8 MiB on disk).
    """

    def __init__(
        self,
        name: str,
        kind: FieldKind | str = FieldKind.TEXT,
        size_limit: int | None = None,
        content_types: Iterable[str | Sequence[str]] | None = None,
        repetition: Repetition | int | None = None,
    ) -> None:
        kind = FieldKind(kind)
        if size_limit is None:
            size_limit = DEFAULT_FILE_LIMIT if kind is FieldKind.FILE else DEFAULT_IN_MEMORY_LIMIT
        if isinstance(size_limit, bool) or not isinstance(size_limit, int) or size_limit < 0:
            raise ValueError("size_limit must be a non-negative int, not %r" % (size_limit,))

        if repetition is None:
            repetition = Repetition()
        elif not isinstance(repetition, Repetition):
            repetition = Repetition.fixed(repetition)

        self._name = name
        self._kind = kind
        self._size_limit = size_limit
        self._content_types: tuple[MimePattern, ...] | None = None
        if content_types is not None:
            self._content_types = tuple(parse_content_type_filter(c) for c in content_types) or None
        self.repetition = repetition

    @classmethod
    def text(cls, name: str, **kwargs: Any) -> FieldRule:
        return cls(name, FieldKind.TEXT, **kwargs)

    @classmethod
    def raw(cls, name: str, **kwargs: Any) -> FieldRule:
        return cls(name, FieldKind.RAW, **kwargs)

    # The same thing as a raw field.
    bytes = raw

    @classmethod
    def file(cls, name: str, **kwargs: Any) -> FieldRule:
        return cls(name, FieldKind.FILE, **kwargs)

    @property
    def name(self) -> str:
        return self._name

    @property
    def kind(self) -> FieldKind:
        return self._kind

    @property
    def size_limit(self) -> int:
        return self._size_limit

    @property
    def content_types(self) -> tuple[MimePattern, ...] | None:
        return self._content_types

    def accepts_content_type(self, declared: str | tuple[str, str] | None) -> bool:
        return content_type_matches(declared, self._content_types)

    def copy(self) -> FieldRule:
        """Return an independent rule with the same constraints and repetition."""
        rule = self.__class__(self._name, self._kind, self._size_limit, repetition=self.repetition.copy())
        rule._content_types = self._content_types
        return rule

    def __repr__(self) -> str:
        return "%s(name=%r, kind=%s, size_limit=%d, content_types=%r, repetition=%r)" % (
            self.__class__.__name__,
            self._name,
            self._kind.name,
            self._size_limit,
            self._content_types,
            self.repetition,
        )


class RuleRegistry:
    """
    The collection of field rules used by a single parse.  Rules sharing a
    name are queued in registration order: an entry is always matched by the
    first rule of its name that still has repetitions left, and a rule is
    removed once exhausted.

    A registry is consumed by the parse it is given to and can't be reused.
    """

    def __init__(self, rules: Iterable[FieldRule] = ()) -> None:
        self.logger = logging.getLogger(__name__)
        self._rules: dict[str, deque[FieldRule]] = {}
        self._prepared = False
        self._used = False
        for rule in rules:
            self.register(rule)

    def register(self, rule: FieldRule) -> None:
        if self._prepared:
            raise ValueError("Can't register rules once the registry is prepared")
        self._rules.setdefault(rule.name, deque()).append(rule)

    def prepare(self) -> RuleRegistry:
        """Sort the rules by name and freeze the registry."""
        if not self._prepared:
            self._rules = dict(sorted(self._rules.items()))
            self._prepared = True
        return self

    @property
    def prepared(self) -> bool:
        return self._prepared

    def match(self, field_name: str) -> FieldRule | None:
        """
        Return the rule that an entry named ``field_name`` would be decoded
        with, without consuming it.  Returns None for unregistered names.
        """
        if not self._prepared:
            self.prepare()
        queue = self._rules.get(field_name)
        if not queue:
            return None
        return queue[0]

    def consume(self, rule: FieldRule) -> bool:
        """
        Account for one entry decoded with ``rule``.  Returns True if the rule
        was exhausted, in which case it has been removed from the registry.
        """
        queue = self._rules.get(rule.name)
        if not queue or queue[0] is not rule:
            raise ValueError("%r is not the active rule for %r" % (rule, rule.name))

        exhausted = rule.repetition.consume()
        if exhausted:
            queue.popleft()
            if not queue:
                del self._rules[rule.name]
            self.logger.debug("Rule for %r is exhausted", rule.name)
        return exhausted

    def mark_used(self) -> None:
        if self._used:
            raise ValueError("A RuleRegistry can only be used for one parse")
        self._used = True

    def names(self) -> list[str]:
        return list(self._rules)

    def rules_for(self, field_name: str) -> tuple[FieldRule, ...]:
        return tuple(self._rules.get(field_name, ()))

    def __contains__(self, field_name: object) -> bool:
        return field_name in self._rules

    def __len__(self) -> int:
        return sum(len(queue) for queue in self._rules.values())

    def __iter__(self) -> Iterator[FieldRule]:
        for queue in self._rules.values():
            yield from queue

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(rules={list(self)!r})"
