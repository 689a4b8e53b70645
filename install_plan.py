"""
install_plan.py
===============
Diffs a ResolvedSelection against the installed state.

  - in state, not in selection     → Remove
  - in selection, not in state     → Install
  - in both, newer / older version → Upgrade / Downgrade
  - in both, same version          → NoOp

Actions are ordered by dependency depth (leaves first) so nothing is
installed before what it depends on; every Remove comes last.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional, Set

from dependency_resolver import ResolvedPackage, ResolvedSelection
from install_state import InstallRecord
from plugin_versions import VersionSpec, package_key


class ActionKind(Enum):
    INSTALL = "install"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    REMOVE = "remove"
    NOOP = "noop"


@dataclass
class PlanAction:
    kind: ActionKind
    name: str
    old_version: Optional[VersionSpec] = None
    new_version: Optional[VersionSpec] = None
    package: Optional[ResolvedPackage] = None
    record: Optional[InstallRecord] = None
    depth: int = 0

    @property
    def key(self) -> str:
        return package_key(self.name)

    @property
    def changes_disk(self) -> bool:
        return self.kind is not ActionKind.NOOP

    def describe(self) -> str:
        if self.kind is ActionKind.INSTALL:
            return f"Install {self.name} {self.new_version}"
        if self.kind in (ActionKind.UPGRADE, ActionKind.DOWNGRADE):
            return f"{self.kind.value.capitalize()} {self.name} {self.old_version} -> {self.new_version}"
        if self.kind is ActionKind.REMOVE:
            return f"Remove {self.name} {self.old_version}"
        return f"Keep {self.name} {self.new_version}"


def dependency_depths(selection: ResolvedSelection) -> Dict[str, int]:
    """0 for leaves, else 1 + deepest dependency. Cycle edges count as leaves."""
    depths: Dict[str, int] = {}
    visiting: Set[str] = set()

    def depth_of(key: str) -> int:
        if key in depths:
            return depths[key]
        if key in visiting:
            return -1
        visiting.add(key)
        deps = selection.dependencies_of(key)
        value = 1 + max((depth_of(d) for d in deps), default=-1)
        visiting.discard(key)
        depths[key] = value
        return value

    for key in selection.packages:
        depth_of(key)
    return depths


def build_plan(
    selection: ResolvedSelection,
    current_state: Mapping[str, InstallRecord],
) -> List[PlanAction]:
    state = {package_key(name): record for name, record in current_state.items()}
    depths = dependency_depths(selection)
    actions: List[PlanAction] = []

    for key, package in selection.packages.items():
        record = state.get(key)
        if record is None:
            kind, old = ActionKind.INSTALL, None
        else:
            old = record.version_spec
            if package.version > old:
                kind = ActionKind.UPGRADE
            elif package.version < old:
                kind = ActionKind.DOWNGRADE
            else:
                kind = ActionKind.NOOP
        actions.append(PlanAction(
            kind=kind,
            name=package.name,
            old_version=old,
            new_version=package.version,
            package=package,
            record=record,
            depth=depths.get(key, 0),
        ))
    actions.sort(key=lambda a: (a.depth, a.key))

    removals = [
        PlanAction(ActionKind.REMOVE, record.name, old_version=record.version_spec, record=record)
        for key, record in sorted(state.items())
        if key not in selection.packages
    ]
    return actions + removals


def summarize_plan(plan: List[PlanAction]) -> Dict[str, int]:
    counts = {kind.value: 0 for kind in ActionKind}
    for action in plan:
        counts[action.kind.value] += 1
    return counts
