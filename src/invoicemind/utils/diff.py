"""Structural diff between two JSON-like records.

Paths are dotted (``line_items.0.sku``) so they can be fed straight into a
``var`` expression.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

PatchOp = Literal["add", "remove", "replace"]


class PatchOperation(BaseModel):
    """A single leaf-level difference."""

    model_config = ConfigDict(frozen=True)

    op: PatchOp
    path: str
    value: Any = None


def _join(prefix: str, key: str | int) -> str:
    return f"{prefix}.{key}" if prefix else str(key)


def _walk(old: Any, new: Any, path: str, ops: list[PatchOperation]) -> None:
    if isinstance(old, dict) and isinstance(new, dict):
        for key, old_value in old.items():
            if key not in new:
                ops.append(PatchOperation(op="remove", path=_join(path, key)))
            else:
                _walk(old_value, new[key], _join(path, key), ops)
        for key, new_value in new.items():
            if key not in old:
                ops.append(
                    PatchOperation(op="add", path=_join(path, key), value=new_value)
                )
        return

    if isinstance(old, list) and isinstance(new, list):
        shared = min(len(old), len(new))
        for index in range(shared):
            _walk(old[index], new[index], _join(path, index), ops)
        for index in range(shared, len(new)):
            ops.append(
                PatchOperation(op="add", path=_join(path, index), value=new[index])
            )
        for index in range(shared, len(old)):
            ops.append(PatchOperation(op="remove", path=_join(path, index)))
        return

    if old != new:
        ops.append(PatchOperation(op="replace", path=path, value=new))


def compute_diff(original: Any, modified: Any) -> list[PatchOperation]:
    """Compute the leaf-level operations that turn ``original`` into ``modified``."""
    ops: list[PatchOperation] = []
    _walk(original, modified, "", ops)
    return ops


def extract_changes(patch: list[PatchOperation]) -> dict[str, Any]:
    """Map each added or replaced path to its new value, ignoring removals."""
    return {op.path: op.value for op in patch if op.op in ("add", "replace")}


def get_path(record: Any, path: str) -> Any:
    """Resolve a dotted path inside nested dicts and lists, or return None."""
    if path == "":
        return record

    current = record
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, list):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return None
        else:
            return None
    return current
