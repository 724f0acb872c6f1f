"""Ordered install plans."""
from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from .actions import InstallAction, InstallContext, Mkdir
from .atomic import AtomicWriter
from .errors import SiteSyncError

LOGGER = logging.getLogger(__name__)


class PlanOrderError(SiteSyncError):
    """Raised when a directory is declared after entries placed inside it."""


@dataclass(frozen=True, slots=True)
class PlanResult:
    """Relative paths whose application modified the filesystem."""

    changed: tuple[str, ...] = ()

    @property
    def any_changed(self) -> bool:
        return bool(self.changed)


@dataclass(frozen=True, slots=True)
class InstallPlan:
    """An ordered sequence of actions for one installation root."""

    actions: tuple[InstallAction, ...]

    @classmethod
    def of(cls, actions: Iterable[InstallAction]) -> InstallPlan:
        plan = cls(tuple(actions))
        plan.validate()
        return plan

    def __iter__(self) -> Iterator[InstallAction]:
        return iter(self.actions)

    def __len__(self) -> int:
        return len(self.actions)

    def validate(self) -> None:
        """Ensure every ``Mkdir`` precedes the entries declared inside it."""
        seen: list[str] = []
        for action in self.actions:
            if isinstance(action, Mkdir):
                prefix = f"{action.path}/"
                for earlier in seen:
                    if earlier.startswith(prefix):
                        raise PlanOrderError(
                            f"directory declared after {earlier}",
                            path=action.path,
                        )
            seen.append(action.path)

    def apply(self, context: InstallContext, writer: AtomicWriter) -> PlanResult:
        """Apply every action in order, stopping at the first failure.

        Actions committed before a failure stay committed; the error carries
        the relative path of the failing action.
        """
        changed: list[str] = []
        for action in self.actions:
            try:
                outcome = action.apply(context, writer)
            except SiteSyncError as exc:
                exc.path = action.path
                raise
            if outcome.changed:
                LOGGER.debug("%s %s changed.", action.kind, action.path)
                changed.append(action.path)
        return PlanResult(tuple(changed))


__all__ = ["InstallPlan", "PlanOrderError", "PlanResult"]
