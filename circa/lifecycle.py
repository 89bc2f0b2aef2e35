"""
Shared shape of the Order and Item lifecycles.

Callbacks never call trigger directly. They queue Cascades (follow-up triggers applied by the
engine inside the same transaction) and deferred effects (run only after commit).
"""
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from circa.models import Subject, SubjectKind, Transition, TransitionMetadata
from circa.store import Session


@dataclass(frozen=True)
class Cascade:
    kind: SubjectKind
    subject_id: int
    event: str
    metadata: TransitionMetadata
    strict: bool = True  # strict cascades abort the whole unit when not permitted


@dataclass
class Effects:
    cascades: deque[Cascade] = field(default_factory=deque)
    deferred: list[Callable[[], Awaitable[None]]] = field(default_factory=list)
    applied: list[Transition] = field(default_factory=list)

    def cascade(self, cascade: Cascade) -> None:
        self.cascades.append(cascade)

    def defer(self, effect: Callable[[], Awaitable[None]]) -> None:
        self.deferred.append(effect)


class Lifecycle(ABC):
    kind: SubjectKind

    async def resolve_metadata(
        self, session: Session, subject_id: int, metadata: TransitionMetadata
    ) -> TransitionMetadata:
        return metadata

    async def lock(self, session: Session, subject_id: int, metadata: TransitionMetadata) -> None:
        await session.lock(self.kind, subject_id)

    @abstractmethod
    async def event_permitted(self, session: Session, subject: Subject, event: str) -> bool:
        """Pure predicate: must not write to the session."""

    @abstractmethod
    async def event_callbacks(
        self, session: Session, subject: Subject, transition: Transition, effects: Effects
    ) -> None:
        """Side effects of a transition that has just been appended."""
