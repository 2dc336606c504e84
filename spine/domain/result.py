"""
Result type for the spine's expected failures.

A raw record that cannot be normalized, a signal kind with no threshold for an
entity, a source that does not answer: none of these stop an evaluation. They
travel as ``Result.err`` values and end up in the judgment's unknowns.
"""

from typing import Generic, TypeVar

ValueT = TypeVar("ValueT")
ErrorT = TypeVar("ErrorT", bound=BaseException)


class Result(Generic[ValueT, ErrorT]):
    """
    Either a value or the exception explaining why there is none.

    Unlike an Optional, an Ok may legitimately carry an empty value (a source
    with no records in the window), so success is tracked explicitly.
    """

    __slots__ = ("_ok", "_value", "_error")

    def __init__(self, ok: bool, value: ValueT | None, error: ErrorT | None) -> None:
        if ok == (error is not None):
            raise ValueError("Result must be either ok with a value or err with an error")
        self._ok = ok
        self._value = value
        self._error = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT, ErrorT]":
        return cls(True, value, None)

    @classmethod
    def err(cls, error: ErrorT) -> "Result[ValueT, ErrorT]":
        return cls(False, None, error)

    def is_ok(self) -> bool:
        return self._ok

    def is_err(self) -> bool:
        return not self._ok

    def unwrap(self) -> ValueT:
        """The value; re-raises the carried exception on an Err."""
        if not self._ok:
            raise self._error  # type: ignore[misc]
        return self._value  # type: ignore[return-value]

    def unwrap_err(self) -> ErrorT:
        if self._ok:
            raise ValueError("Called unwrap_err() on an Ok value")
        return self._error  # type: ignore[return-value]

    def __repr__(self) -> str:
        if self._ok:
            return f"Result.ok({self._value!r})"
        return f"Result.err({self._error!r})"
