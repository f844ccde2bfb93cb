from __future__ import annotations

import re
from dataclasses import dataclass

from shardlock.core.errors import CatalogError


FORMAT_RE = re.compile(r"^[A-Z]+(-[A-Z]+)*$")
PLACEHOLDER = "X"

# group name -> slot name -> value
FinalCode = dict[str, dict[str, str]]


@dataclass(frozen=True)
class SlotRef:
    group: str
    slot: str

    def __str__(self) -> str:
        return f"{self.group}.{self.slot}"


@dataclass(frozen=True)
class CodeFormat:
    """Shape of a final-code grid, e.g. ``AAA-BBB-CCC``.

    Each dash-separated group becomes a grid row; group ``AAA`` owns slots
    ``A1``, ``A2``, ``A3``. Slot names are unique across the whole grid.
    """

    template: str
    groups: tuple[tuple[str, tuple[str, ...]], ...]

    @property
    def slots(self) -> list[SlotRef]:
        return [SlotRef(group, slot) for group, names in self.groups for slot in names]

    def slot_for(self, name: str) -> SlotRef | None:
        for ref in self.slots:
            if ref.slot == name:
                return ref
        return None

    def has_slot(self, group: str, slot: str) -> bool:
        return any(g == group and slot in names for g, names in self.groups)

    def empty_grid(self) -> FinalCode:
        return {group: {slot: "" for slot in names} for group, names in self.groups}


def parse_code_format(template: str) -> CodeFormat:
    template = str(template or "").strip()
    if not FORMAT_RE.match(template):
        raise CatalogError(f"invalid code format {template!r}: expected groups like AAA-BBB-CCC")

    groups: list[tuple[str, tuple[str, ...]]] = []
    seen_groups: set[str] = set()
    seen_slots: set[str] = set()
    for group in template.split("-"):
        if group in seen_groups:
            raise CatalogError(f"duplicate group {group} in code format {template}")
        seen_groups.add(group)
        names = tuple(f"{group[0]}{i}" for i in range(1, len(group) + 1))
        clash = seen_slots.intersection(names)
        if clash:
            raise CatalogError(f"slot {sorted(clash)[0]} appears twice in code format {template}")
        seen_slots.update(names)
        groups.append((group, names))

    return CodeFormat(template=template, groups=tuple(groups))


def split_target_code(code: str, fmt: CodeFormat) -> FinalCode:
    """Spread a solved code over the grid, one character per slot."""
    parts = str(code or "").strip().split("-")
    if len(parts) != len(fmt.groups):
        raise CatalogError(f"code {code!r} does not match format {fmt.template}")
    grid: FinalCode = {}
    for part, (group, names) in zip(parts, fmt.groups):
        if len(part) != len(names):
            raise CatalogError(f"code {code!r} does not match format {fmt.template}")
        grid[group] = dict(zip(names, part))
    return grid


def code_matches_format(code: str, fmt: CodeFormat) -> bool:
    try:
        split_target_code(code, fmt)
    except CatalogError:
        return False
    return True


def render_partial(grid: FinalCode, fmt: CodeFormat, placeholder: str = PLACEHOLDER) -> str:
    out = []
    for group, names in fmt.groups:
        row = grid.get(group, {})
        out.append("".join(row.get(slot) or placeholder for slot in names))
    return "-".join(out)


def build_code(grid: FinalCode, fmt: CodeFormat) -> str:
    return render_partial(grid, fmt, placeholder="")


def filled_slots(grid: FinalCode) -> int:
    return sum(1 for row in grid.values() for value in row.values() if value)


def grid_is_full(grid: FinalCode) -> bool:
    return all(value for row in grid.values() for value in row.values())


def completion_percentage(grid: FinalCode, fmt: CodeFormat) -> int:
    total = len(fmt.slots)
    if not total:
        return 0
    return (filled_slots(grid) * 100) // total
