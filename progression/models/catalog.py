"""Course catalogue as seen by the progression core.

Authoring lives elsewhere; these records are the slice of it the core
reads: which course a module belongs to, its single prerequisite, how
many lessons it has and what each piece of content is worth in XP.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from progression.core.errors import InvalidInputError


@dataclass(frozen=True, slots=True)
class Course:
    id: str
    title: str


@dataclass(frozen=True, slots=True)
class Module:
    id: str
    course_id: str
    title: str = ""
    prerequisite_module_id: str | None = None
    total_lessons: int = 0
    xp_reward: int = 0
    position: int = 0


@dataclass(frozen=True, slots=True)
class Lesson:
    id: str
    module_id: str
    title: str = ""
    xp_reward: int = 0
    position: int = 0


@dataclass(frozen=True, slots=True)
class Lab:
    id: str
    module_id: str
    title: str = ""
    expected_commands: tuple[str, ...] = ()
    xp_reward: int = 0


def check_prerequisite(modules: Mapping[str, Module], module: Module) -> None:
    """Reject a module whose prerequisite is unknown or leads back to itself.

    Prerequisites form a forest: each module has at most one parent, so
    walking parent links from the new module must end at a root without
    meeting the module again.
    """
    prereq_id = module.prerequisite_module_id
    if prereq_id is None:
        return
    if prereq_id == module.id:
        raise InvalidInputError(f"module {module.id} cannot require itself")

    seen = {module.id}
    current = prereq_id
    while current is not None:
        if current in seen:
            raise InvalidInputError(
                f"prerequisite cycle through module {module.id}"
            )
        parent = modules.get(current)
        if parent is None:
            raise InvalidInputError(f"unknown prerequisite module {current}")
        seen.add(current)
        current = parent.prerequisite_module_id
