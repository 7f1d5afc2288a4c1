"""Lookup outcomes.

Every persistence lookup returns either ``Found(value)`` or one of the
``NotFound`` kinds below, so call sites decide explicitly whether a missing
entity is dropped, logged or tolerated.
"""

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Found(Generic[T]):
    value: T


@dataclass(frozen=True)
class NotFound:
    key: str

    @property
    def entity(self) -> str:
        return type(self).__name__.replace("NotFound", "").lower() or "entity"

    def __str__(self) -> str:
        return f"{self.entity} '{self.key}' not found"


class RobotNotFound(NotFound):
    pass


class InstallationNotFound(NotFound):
    pass


class RunNotFound(NotFound):
    pass


class TaskNotFound(NotFound):
    pass


class StepNotFound(NotFound):
    pass


class DefinitionNotFound(NotFound):
    pass


Lookup = Union[Found[T], NotFound]
