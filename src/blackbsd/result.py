"""Tagged success/failure values for expected, handled failure outcomes."""

from dataclasses import dataclass
from typing import Generic, Literal, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T
    ok: Literal[True] = True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True, slots=True)
class Err:
    error: Exception
    ok: Literal[False] = False

    def unwrap(self):
        raise self.error


Result = Ok[T] | Err
