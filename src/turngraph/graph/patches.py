"""
Shared-state patches.

Nested flows never hand their shared data back wholesale; they return an
ordered list of ``set`` operations. Applying the list is pure (the input
mapping is not touched) and idempotent.
"""

import copy
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Literal


@dataclass(frozen=True)
class SharedStatePatch:
    """A single ``set`` operation on shared data.

    ``path`` may be dotted (``"result.summary"``) to address nested mappings.
    """

    path: str
    value: Any
    op: Literal["set"] = "set"

    def __post_init__(self) -> None:
        if self.op != "set":
            raise ValueError(f"Unsupported patch op: {self.op}")
        if not self.path or any(not part for part in self.path.split(".")):
            raise ValueError(f"Invalid patch path: {self.path!r}")

    def to_dict(self) -> dict[str, Any]:
        return {"op": self.op, "path": self.path, "value": self.value}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SharedStatePatch":
        return cls(path=data["path"], value=data.get("value"), op=data.get("op", "set"))


def set_patch(path: str, value: Any) -> SharedStatePatch:
    return SharedStatePatch(path=path, value=value)


def apply_patches(
    shared_data: Mapping[str, Any],
    patches: Iterable[SharedStatePatch],
) -> dict[str, Any]:
    """Return a copy of ``shared_data`` with ``patches`` applied in order."""
    result = copy.deepcopy(dict(shared_data))

    for patch in patches:
        *parents, leaf = patch.path.split(".")
        target = result
        for key in parents:
            child = target.get(key)
            if not isinstance(child, dict):
                child = {}
                target[key] = child
            target = child
        target[leaf] = copy.deepcopy(patch.value)

    return result


def get_path(shared_data: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """Read a dotted path from shared data."""
    current: Any = shared_data
    for key in path.split("."):
        if not isinstance(current, Mapping) or key not in current:
            return default
        current = current[key]
    return current
