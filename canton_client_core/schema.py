"""Composable runtime schemas for validating untyped network payloads.

Schemas are plain objects built from a handful of primitives and combinators::

    UserSchema = obj({
        "id": string(min_length=1),
        "primaryParty": optional(string()),
        "isDeactivated": boolean(),
    })
    user = UserSchema.parse(raw)

``parse`` raises :class:`ValidationError` listing every failing field path;
``safe_parse`` returns a :class:`ParseResult` instead of raising. Values are
never coerced between types: ``True`` is not an integer and ``"5"`` is not a
number. Parsing a value that already conforms returns an equal value.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, Literal, TypeVar

from .errors import Issue, ValidationError

T = TypeVar("T")

Path = tuple[str | int, ...]
UnknownKeys = Literal["strip", "forbid", "passthrough"]


class _Invalid:
    __slots__ = ()

    def __repr__(self) -> str:
        return "<invalid>"


INVALID: Any = _Invalid()


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


@dataclass(frozen=True)
class ParseResult(Generic[T]):
    """Outcome of :meth:`Schema.safe_parse`."""

    value: T | None = None
    error: ValidationError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Schema(Generic[T]):
    """Base class for all schemas."""

    name = "value"

    def _check(self, value: Any, path: Path, issues: list[Issue]) -> T:
        raise NotImplementedError

    def parse(self, value: Any) -> T:
        """Validate ``value`` and return the parsed result or raise."""
        issues: list[Issue] = []
        result = self._check(value, (), issues)
        if issues or result is INVALID:
            raise ValidationError(issues or [Issue((), f"invalid {self.name}")])
        return result

    def safe_parse(self, value: Any) -> ParseResult[T]:
        """Validate ``value`` without raising."""
        try:
            return ParseResult(value=self.parse(value))
        except ValidationError as err:
            return ParseResult(error=err)

    def is_valid(self, value: Any) -> bool:
        return self.safe_parse(value).ok

    def refine(self, predicate: Callable[[T], bool], message: str) -> Schema[T]:
        """Add a check that runs after this schema accepts a value."""
        return _Refined(self, predicate, message)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class _Refined(Schema[T]):
    def __init__(self, inner: Schema[T], predicate: Callable[[T], bool], message: str) -> None:
        self.inner = inner
        self.predicate = predicate
        self.message = message
        self.name = inner.name

    def _check(self, value: Any, path: Path, issues: list[Issue]) -> T:
        before = len(issues)
        result = self.inner._check(value, path, issues)
        if len(issues) > before or result is INVALID:
            return INVALID
        if not self.predicate(result):
            issues.append(Issue(path, self.message))
            return INVALID
        return result


class StringSchema(Schema[str]):
    name = "string"

    def __init__(
        self,
        *,
        min_length: int | None = None,
        max_length: int | None = None,
        pattern: str | None = None,
    ) -> None:
        self.min_length = min_length
        self.max_length = max_length
        self.pattern = re.compile(pattern) if pattern is not None else None

    def _check(self, value: Any, path: Path, issues: list[Issue]) -> str:
        if not isinstance(value, str):
            issues.append(Issue(path, f"expected string, got {_type_name(value)}"))
            return INVALID
        if self.min_length is not None and len(value) < self.min_length:
            issues.append(Issue(path, f"must be at least {self.min_length} characters"))
            return INVALID
        if self.max_length is not None and len(value) > self.max_length:
            issues.append(Issue(path, f"must be at most {self.max_length} characters"))
            return INVALID
        if self.pattern is not None and self.pattern.fullmatch(value) is None:
            issues.append(Issue(path, f"does not match pattern {self.pattern.pattern!r}"))
            return INVALID
        return value


class _NumericSchema(Schema[T]):
    def __init__(self, *, minimum: float | None = None, maximum: float | None = None) -> None:
        self.minimum = minimum
        self.maximum = maximum

    def _accepts(self, value: Any) -> bool:
        raise NotImplementedError

    def _check(self, value: Any, path: Path, issues: list[Issue]) -> T:
        if not self._accepts(value):
            issues.append(Issue(path, f"expected {self.name}, got {_type_name(value)}"))
            return INVALID
        if self.minimum is not None and value < self.minimum:
            issues.append(Issue(path, f"must be >= {self.minimum}"))
            return INVALID
        if self.maximum is not None and value > self.maximum:
            issues.append(Issue(path, f"must be <= {self.maximum}"))
            return INVALID
        return value


class IntegerSchema(_NumericSchema[int]):
    name = "integer"

    def _accepts(self, value: Any) -> bool:
        return isinstance(value, int) and not isinstance(value, bool)


class NumberSchema(_NumericSchema[float]):
    name = "number"

    def _accepts(self, value: Any) -> bool:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        return not (isinstance(value, float) and not math.isfinite(value))


class BooleanSchema(Schema[bool]):
    name = "boolean"

    def _check(self, value: Any, path: Path, issues: list[Issue]) -> bool:
        if not isinstance(value, bool):
            issues.append(Issue(path, f"expected boolean, got {_type_name(value)}"))
            return INVALID
        return value


class NullSchema(Schema[None]):
    name = "null"

    def _check(self, value: Any, path: Path, issues: list[Issue]) -> None:
        if value is not None:
            issues.append(Issue(path, f"expected null, got {_type_name(value)}"))
            return INVALID
        return None


class LiteralSchema(Schema[Any]):
    def __init__(self, *values: Any) -> None:
        if not values:
            raise ValueError("literal() requires at least one value")
        self.values = values
        self.name = " | ".join(repr(v) for v in values)

    def _check(self, value: Any, path: Path, issues: list[Issue]) -> Any:
        for candidate in self.values:
            if type(candidate) is type(value) and candidate == value:
                return value
        issues.append(Issue(path, f"expected {self.name}, got {value!r}"))
        return INVALID


class JsonSchema(Schema[Any]):
    """Any JSON-compatible value, for payloads deliberately left opaque."""

    name = "json"

    def _check(self, value: Any, path: Path, issues: list[Issue]) -> Any:
        if value is None or isinstance(value, (str, bool, int)):
            return value
        if isinstance(value, float):
            if math.isfinite(value):
                return value
            issues.append(Issue(path, "non-finite number is not valid JSON"))
            return INVALID
        if isinstance(value, list):
            items = [self._check(item, (*path, i), issues) for i, item in enumerate(value)]
            return INVALID if any(item is INVALID for item in items) else items
        if isinstance(value, dict):
            out: dict[str, Any] = {}
            ok = True
            for key, item in value.items():
                if not isinstance(key, str):
                    issues.append(Issue(path, f"object key {key!r} is not a string"))
                    ok = False
                    continue
                checked = self._check(item, (*path, key), issues)
                if checked is INVALID:
                    ok = False
                out[key] = checked
            return out if ok else INVALID
        issues.append(Issue(path, f"{_type_name(value)} is not valid JSON"))
        return INVALID


class OptionalSchema(Schema[T]):
    """Marks an object key as optional; absent keys stay absent.

    A present key is checked by the inner schema, so an explicit null is
    rejected unless the inner schema is ``nullable``.
    """

    def __init__(self, inner: Schema[T]) -> None:
        self.inner = inner
        self.name = f"optional {inner.name}"

    def _check(self, value: Any, path: Path, issues: list[Issue]) -> T:
        return self.inner._check(value, path, issues)


class NullableSchema(Schema[T | None]):
    def __init__(self, inner: Schema[T]) -> None:
        self.inner = inner
        self.name = f"nullable {inner.name}"

    def _check(self, value: Any, path: Path, issues: list[Issue]) -> T | None:
        if value is None:
            return None
        return self.inner._check(value, path, issues)


class ArraySchema(Schema[list[T]]):
    def __init__(
        self,
        item: Schema[T],
        *,
        min_length: int | None = None,
        max_length: int | None = None,
    ) -> None:
        self.item = item
        self.min_length = min_length
        self.max_length = max_length
        self.name = f"array of {item.name}"

    def _check(self, value: Any, path: Path, issues: list[Issue]) -> list[T]:
        if not isinstance(value, list):
            issues.append(Issue(path, f"expected array, got {_type_name(value)}"))
            return INVALID
        before = len(issues)
        if self.min_length is not None and len(value) < self.min_length:
            issues.append(Issue(path, f"must contain at least {self.min_length} items"))
        if self.max_length is not None and len(value) > self.max_length:
            issues.append(Issue(path, f"must contain at most {self.max_length} items"))
        items = [self.item._check(item, (*path, i), issues) for i, item in enumerate(value)]
        if len(issues) > before or any(item is INVALID for item in items):
            return INVALID
        return items


class MappingSchema(Schema[dict[str, T]]):
    """Object with arbitrary string keys and uniformly typed values."""

    def __init__(self, value: Schema[T]) -> None:
        self.value = value
        self.name = f"mapping of {value.name}"

    def _check(self, value: Any, path: Path, issues: list[Issue]) -> dict[str, T]:
        if not isinstance(value, dict):
            issues.append(Issue(path, f"expected object, got {_type_name(value)}"))
            return INVALID
        out: dict[str, T] = {}
        ok = True
        for key, item in value.items():
            if not isinstance(key, str):
                issues.append(Issue(path, f"key {key!r} is not a string"))
                ok = False
                continue
            checked = self.value._check(item, (*path, key), issues)
            if checked is INVALID:
                ok = False
            out[key] = checked
        return out if ok else INVALID


class ObjectSchema(Schema[dict[str, Any]]):
    """Object with a declared set of fields.

    ``unknown`` controls undeclared keys: ``"strip"`` drops them,
    ``"forbid"`` reports them, ``"passthrough"`` keeps them unvalidated.
    """

    name = "object"

    def __init__(self, fields: Mapping[str, Schema[Any]], *, unknown: UnknownKeys = "strip") -> None:
        self.fields = dict(fields)
        self.unknown = unknown

    def extend(self, fields: Mapping[str, Schema[Any]]) -> ObjectSchema:
        return ObjectSchema({**self.fields, **fields}, unknown=self.unknown)

    def _check(self, value: Any, path: Path, issues: list[Issue]) -> dict[str, Any]:
        if not isinstance(value, dict):
            issues.append(Issue(path, f"expected object, got {_type_name(value)}"))
            return INVALID

        before = len(issues)
        out: dict[str, Any] = {}
        for key, field_schema in self.fields.items():
            if key not in value:
                if not isinstance(field_schema, OptionalSchema):
                    issues.append(Issue((*path, key), "required field is missing"))
                continue
            out[key] = field_schema._check(value[key], (*path, key), issues)

        extras = [key for key in value if key not in self.fields]
        if extras and self.unknown == "forbid":
            for key in extras:
                issues.append(Issue((*path, key), "unexpected field"))
        elif self.unknown == "passthrough":
            for key in extras:
                out[key] = value[key]

        if len(issues) > before:
            return INVALID
        return out


class UnionSchema(Schema[Any]):
    """First matching alternative wins."""

    def __init__(self, *options: Schema[Any]) -> None:
        if not options:
            raise ValueError("union() requires at least one schema")
        self.options = options
        self.name = " | ".join(option.name for option in options)

    def _check(self, value: Any, path: Path, issues: list[Issue]) -> Any:
        failures: list[str] = []
        for option in self.options:
            attempt: list[Issue] = []
            result = option._check(value, path, attempt)
            if not attempt and result is not INVALID:
                return result
            failures.append("; ".join(str(issue) for issue in attempt) or option.name)
        issues.append(
            Issue(path, "no alternative matched (" + " | ".join(failures) + ")")
        )
        return INVALID


def string(
    *,
    min_length: int | None = None,
    max_length: int | None = None,
    pattern: str | None = None,
) -> StringSchema:
    return StringSchema(min_length=min_length, max_length=max_length, pattern=pattern)


def integer(*, minimum: int | None = None, maximum: int | None = None) -> IntegerSchema:
    return IntegerSchema(minimum=minimum, maximum=maximum)


def number(*, minimum: float | None = None, maximum: float | None = None) -> NumberSchema:
    return NumberSchema(minimum=minimum, maximum=maximum)


def boolean() -> BooleanSchema:
    return BooleanSchema()


def null() -> NullSchema:
    return NullSchema()


def literal(*values: Any) -> LiteralSchema:
    return LiteralSchema(*values)


def json_value() -> JsonSchema:
    return JsonSchema()


def optional(inner: Schema[T]) -> OptionalSchema[T]:
    return OptionalSchema(inner)


def nullable(inner: Schema[T]) -> NullableSchema[T]:
    return NullableSchema(inner)


def array(
    item: Schema[T],
    *,
    min_length: int | None = None,
    max_length: int | None = None,
) -> ArraySchema[T]:
    return ArraySchema(item, min_length=min_length, max_length=max_length)


def mapping(value: Schema[T]) -> MappingSchema[T]:
    return MappingSchema(value)


def obj(fields: Mapping[str, Schema[Any]], *, unknown: UnknownKeys = "strip") -> ObjectSchema:
    return ObjectSchema(fields, unknown=unknown)


def union(*options: Schema[Any]) -> UnionSchema:
    return UnionSchema(*options)


EMPTY = obj({})
