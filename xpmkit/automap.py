"""Sample -> instrument auto-mapping and interactive program edits.

Keygroup boundaries split the keyboard halfway between neighbouring roots
(ties go to the lower keygroup) so the keygroups cover 0..127 exactly once.
Samples sharing a root are stacked as equal-width velocity bands.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from xpmkit.errors import DataError, Issue
from xpmkit.models import (
    DrumKit,
    Instrument,
    Keygroup,
    Sample,
    SampleRegistry,
    VelocityLayer,
)
from xpmkit.notes import MIDDLE_C, clamp_midi, note_from_name
from xpmkit.pitch import estimate_sample_pitch

log = logging.getLogger(__name__)

VELOCITY_KEYWORDS: Tuple[Tuple[str, int], ...] = (("soft", 40), ("med", 80), ("hard", 120))
DEFAULT_VELOCITY = 90
MAX_LAYERS_PER_ROOT = 128

VELOCITY_TOKEN_RE = re.compile(r"(?<![A-Za-z])(?:vel|v)(\d{1,3})(?!\d)", re.IGNORECASE)


@dataclass(frozen=True)
class MappingConfig:
    velocity_keywords: Tuple[Tuple[str, int], ...] = VELOCITY_KEYWORDS
    default_velocity: int = DEFAULT_VELOCITY
    default_root: int = MIDDLE_C
    use_pitch_estimate: bool = True


@dataclass(frozen=True)
class MappedSample:
    sample_id: str
    root_note: int
    velocity: int
    root_source: str  # "name" | "pitch" | "default"


@dataclass
class AutoMapResult:
    program: Instrument
    mapped: List[MappedSample] = field(default_factory=list)
    issues: List[Issue] = field(default_factory=list)


def resolve_root(sample: Sample, config: MappingConfig = MappingConfig()) -> Tuple[int, str]:
    """Root note from the name, else a pitch estimate, else the default root."""
    midi = note_from_name(sample.name)
    if midi is not None:
        return midi, "name"
    if config.use_pitch_estimate:
        est = estimate_sample_pitch(sample)
        if est is not None:
            return clamp_midi(est.midi_note), "pitch"
    return config.default_root, "default"


def velocity_hint(name: str, config: MappingConfig = MappingConfig()) -> int:
    """Explicit `vel100`/`v64` tokens beat soft/med/hard keywords."""
    for m in VELOCITY_TOKEN_RE.finditer(name):
        value = int(m.group(1))
        if 0 <= value <= 127:
            return value
    lowered = name.lower()
    for word, value in config.velocity_keywords:
        if word in lowered:
            return value
    return config.default_velocity


def keygroup_ranges(roots: Sequence[int]) -> List[Tuple[int, int]]:
    """(low, high) per distinct ascending root."""
    ranges: List[Tuple[int, int]] = []
    last = len(roots) - 1
    for i, root in enumerate(roots):
        low = 0 if i == 0 else (roots[i - 1] + root) // 2 + 1
        high = 127 if i == last else (root + roots[i + 1]) // 2
        ranges.append((low, high))
    return ranges


def velocity_ranges(count: int) -> List[Tuple[int, int]]:
    if count <= 0:
        return []
    if count == 1:
        return [(0, 127)]
    band = 128 // count
    ranges = [(i * band, (i + 1) * band - 1) for i in range(count)]
    low, _ = ranges[-1]
    ranges[-1] = (low, 127)
    return ranges


def auto_map(
    sample_ids: Sequence[str],
    registry: SampleRegistry,
    name: str = "Auto Mapped",
    instrument_id: str = "instrument_0",
    config: MappingConfig = MappingConfig(),
) -> AutoMapResult:
    issues: List[Issue] = []
    mapped: List[MappedSample] = []
    for sid in sample_ids:
        try:
            sample = registry.require(sid)
        except DataError as e:
            issues.append(Issue("missing_sample", str(e), sample_id=sid))
            continue
        root, source = resolve_root(sample, config)
        mapped.append(MappedSample(sample_id=sid, root_note=root, velocity=velocity_hint(sample.name, config), root_source=source))

    by_root: Dict[int, List[MappedSample]] = {}
    for m in mapped:
        by_root.setdefault(m.root_note, []).append(m)

    roots = sorted(by_root)
    keygroups: List[Keygroup] = []
    for i, (root, (low, high)) in enumerate(zip(roots, keygroup_ranges(roots))):
        members = sorted(by_root[root], key=lambda m: m.velocity)
        if len(members) > MAX_LAYERS_PER_ROOT:
            for extra in members[MAX_LAYERS_PER_ROOT:]:
                issues.append(
                    Issue(
                        "too_many_layers",
                        f"Root {root} has more than {MAX_LAYERS_PER_ROOT} samples; {extra.sample_id} was not mapped.",
                        sample_id=extra.sample_id,
                        root_note=root,
                    )
                )
            members = members[:MAX_LAYERS_PER_ROOT]
        layers = [
            VelocityLayer(id=f"velocity_{i}_{j}", low_velocity=vlo, high_velocity=vhi, sample_id=m.sample_id)
            for j, (m, (vlo, vhi)) in enumerate(zip(members, velocity_ranges(len(members))))
        ]
        keygroups.append(Keygroup(id=f"keygroup_{i}", low_note=low, high_note=high, root_note=root, velocity_layers=layers))

    for issue in issues:
        log.warning("auto-map: %s", issue.message)
    program = Instrument(id=instrument_id, name=name, keygroups=keygroups)
    return AutoMapResult(program=program, mapped=mapped, issues=issues)


# --- Interactive edits ---


def add_keygroup(instrument: Instrument, low_note: int, high_note: int, root_note: Optional[int]) -> Keygroup:
    if not (0 <= low_note <= high_note <= 127):
        raise ValueError(f"invalid key range {low_note}..{high_note}")
    if root_note is not None and not (low_note <= root_note <= high_note):
        raise ValueError(f"root {root_note} outside {low_note}..{high_note}")
    kg_id = _unused_id([k.id for k in instrument.keygroups], f"keygroup_{len(instrument.keygroups)}")
    kg = Keygroup(
        id=kg_id,
        low_note=low_note,
        high_note=high_note,
        root_note=root_note,
        velocity_layers=[VelocityLayer(id=kg_id.replace("keygroup_", "velocity_") + "_0", low_velocity=0, high_velocity=127)],
    )
    instrument.keygroups.append(kg)
    return kg


def add_velocity_layer(keygroup: Keygroup, low_velocity: int, high_velocity: int) -> VelocityLayer:
    if not (0 <= low_velocity <= high_velocity <= 127):
        raise ValueError(f"invalid velocity range {low_velocity}..{high_velocity}")
    base = keygroup.id.replace("keygroup_", "velocity_")
    layer = VelocityLayer(
        id=_unused_id([v.id for v in keygroup.velocity_layers], f"{base}_{len(keygroup.velocity_layers)}"),
        low_velocity=low_velocity,
        high_velocity=high_velocity,
    )
    keygroup.velocity_layers.append(layer)
    return layer


def assign_sample_to_layer(
    instrument: Instrument,
    keygroup_id: str,
    layer_id: str,
    sample_id: str,
    registry: SampleRegistry,
) -> bool:
    """Point a layer at a sample and re-derive the keygroup root from it."""
    kg = next((k for k in instrument.keygroups if k.id == keygroup_id), None)
    if kg is None:
        return False
    layer = next((v for v in kg.velocity_layers if v.id == layer_id), None)
    if layer is None:
        return False
    layer.sample_id = sample_id

    sample = registry.get(sample_id)
    if sample is not None:
        root, source = resolve_root(sample, MappingConfig(default_root=-1))
        if kg.low_note <= root <= kg.high_note:
            kg.root_note = root
        elif source != "default":
            log.debug("%s root %d for %s lies outside %s; keeping %s", source, root, sample.name, kg.id, kg.root_note)
    return True


def assign_sample_to_pad(kit: DrumKit, pad_index: int, sample_id: str) -> bool:
    if not (0 <= pad_index < len(kit.pads)):
        return False
    kit.pads[pad_index].sample_id = sample_id
    return True


def auto_assign_pads(kit: DrumKit, sample_ids: Sequence[str]) -> int:
    """Fill pads in bank order; samples beyond the last pad are left out."""
    assigned = 0
    for pad, sid in zip(kit.pads, sample_ids):
        pad.sample_id = sid
        assigned += 1
    if len(sample_ids) > len(kit.pads):
        log.warning("%d samples did not fit on %d pads", len(sample_ids) - len(kit.pads), len(kit.pads))
    return assigned


def _unused_id(existing: List[str], candidate: str) -> str:
    taken = set(existing)
    n = 1
    out = candidate
    while out in taken:
        out = f"{candidate}_{n}"
        n += 1
    return out
