from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from xpmkit.errors import DataError, Issue
from xpmkit.models import Instrument, Keygroup, SampleRegistry, VelocityLayer
from xpmkit.notes import clamp_midi, midi_to_note_name, note_from_name
from xpmkit.pitch import estimate_sample_pitch

log = logging.getLogger(__name__)


@dataclass
class ValidationReport:
    issues: List[Issue] = field(default_factory=list)
    samples_validated: int = 0

    @property
    def status(self) -> str:
        return "valid" if not self.issues else "invalid"

    @property
    def is_valid(self) -> bool:
        return not self.issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "issues": [i.to_dict() for i in self.issues],
            "samplesValidated": self.samples_validated,
        }


def _issue(issues: List[Issue], kind: str, message: str, **kw: Any) -> None:
    issues.append(Issue(kind, message, **kw))


def validate_instrument(instrument: Instrument, registry: SampleRegistry) -> ValidationReport:
    """Check an instrument against the sample registry.

    Every check runs regardless of earlier failures, and the instrument is
    never modified, so validating twice gives the same report.
    """
    issues: List[Issue] = []

    layers: List[Tuple[Keygroup, VelocityLayer]] = [
        (kg, layer) for kg in instrument.keygroups for layer in kg.velocity_layers if layer.sample_id
    ]
    if not layers:
        _issue(issues, "no_samples", "No samples found in instrument.")

    # Sample presence and audio
    usable: List[Tuple[Keygroup, VelocityLayer]] = []
    reported: Set[str] = set()
    validated: Set[str] = set()
    for kg, layer in layers:
        sid = layer.sample_id
        try:
            sample = registry.require(sid)
        except DataError as e:
            if sid not in reported:
                _issue(issues, "missing_sample", str(e), sample_id=sid)
                reported.add(sid)
            continue
        if not sample.has_audio:
            if sid not in reported:
                _issue(issues, "no_audio", f"Sample {sample.name} has no audio data.", sample_id=sid)
                reported.add(sid)
            continue
        validated.add(sid)
        usable.append((kg, layer))

    # Velocity layering per resolved root
    by_root: Dict[int, List[VelocityLayer]] = {}
    for kg, layer in usable:
        root = _resolve_root(kg, registry, layer.sample_id)
        if root is None:
            name = registry.get(layer.sample_id).name
            _issue(issues, "pitch_not_detected", f"Pitch not detected for sample {name}.", sample_id=layer.sample_id)
            continue
        by_root.setdefault(root, []).append(layer)

    for root in sorted(by_root):
        group = by_root[root]
        if len(group) < 2:
            continue
        note = midi_to_note_name(root)
        if any(not layer.has_range for layer in group):
            _issue(issues, "missing_velocity_range", f"Root {note} has samples with missing velocity range.", root_note=root)
        ranged = [layer for layer in group if layer.has_range]
        if _any_overlap([(layer.low_velocity, layer.high_velocity) for layer in ranged]):
            _issue(issues, "overlapping_velocity", f"Root {note} has overlapping velocity ranges.", root_note=root)

    _check_key_ranges(instrument, issues)

    for i in issues:
        log.debug("validate %s: %s", instrument.id, i.message)
    return ValidationReport(issues=issues, samples_validated=len(validated))


def _resolve_root(kg: Keygroup, registry: SampleRegistry, sample_id: str) -> Optional[int]:
    if kg.root_note is not None:
        return kg.root_note
    sample = registry.get(sample_id)
    midi = note_from_name(sample.name)
    if midi is not None:
        return midi
    est = estimate_sample_pitch(sample)
    if est is not None:
        return clamp_midi(est.midi_note)
    return None


def _any_overlap(ranges: List[Tuple[int, int]]) -> bool:
    ordered = sorted(ranges)
    for (_, hi), (lo, _) in zip(ordered, ordered[1:]):
        if lo <= hi:
            return True
    return False


def _check_key_ranges(instrument: Instrument, issues: List[Issue]) -> None:
    valid: List[Keygroup] = []
    for kg in instrument.keygroups:
        if not (0 <= kg.low_note <= kg.high_note <= 127):
            _issue(issues, "invalid_key_range", f"Keygroup {kg.id} has invalid key range {kg.low_note}..{kg.high_note}.")
            continue
        if kg.root_note is not None and not (kg.low_note <= kg.root_note <= kg.high_note):
            _issue(
                issues,
                "root_outside_range",
                f"Keygroup {kg.id} root {kg.root_note} lies outside {kg.low_note}..{kg.high_note}.",
                root_note=kg.root_note,
            )
        valid.append(kg)

    ordered = sorted(valid, key=lambda k: (k.low_note, k.high_note))
    for a, b in zip(ordered, ordered[1:]):
        if b.low_note <= a.high_note:
            _issue(issues, "overlapping_keygroups", f"Keygroups {a.id} and {b.id} have overlapping key ranges.")
