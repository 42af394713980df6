from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from xpmkit.analysis import analyze_sample, check_samples
from xpmkit.automap import MappingConfig, auto_map
from xpmkit.editing import SILENCE_THRESHOLD, EditOptions, process_samples
from xpmkit.errors import FormatError
from xpmkit.models import DrumKit, Instrument, Program, SampleRegistry
from xpmkit.notes import midi_to_note_name
from xpmkit.patterns import Progression, load_pad_map, to_pad_pattern, to_progression, write_projection
from xpmkit.render import DEFAULT_TICKS_PER_QUARTER, write_midi
from xpmkit.samples import AUDIO_EXTS, load_samples, write_audio
from xpmkit.smf import decode_midi_file
from xpmkit.validator import validate_instrument
from xpmkit.xpm import read_program_file, repair_document, write_program_file


def _expand_audio(paths: Iterable[str]) -> List[Path]:
    out: List[Path] = []
    for raw in paths:
        p = Path(raw)
        if p.is_dir():
            out.extend(sorted(f for f in p.iterdir() if f.suffix.lower() in AUDIO_EXTS))
        else:
            out.append(p)
    return out


def _load_registry(paths: Iterable[str]) -> SampleRegistry:
    registry = SampleRegistry()
    _, problems = load_samples(_expand_audio(paths), registry)
    for p in problems:
        print(f"warning: {p}", file=sys.stderr)
    return registry


def cmd_midi(args: argparse.Namespace) -> int:
    try:
        midi = decode_midi_file(args.path)
        pad_map = load_pad_map(args.pad_map) if args.pad_map else None
    except (FormatError, OSError, ValueError) as e:
        print(f"error: failed to read {args.path}: {e}", file=sys.stderr)
        return 2

    if args.pads or pad_map is not None:
        projection = to_pad_pattern(midi, pad_map)
    else:
        projection = to_progression(midi)

    if args.output:
        write_projection(args.output, projection)
        print(f"wrote {args.output}")
    else:
        print(json.dumps(projection.to_dict(), ensure_ascii=False, indent=2))
    return 0


def cmd_render(args: argparse.Namespace) -> int:
    try:
        with open(args.path, "r", encoding="utf-8") as f:
            progression = Progression.from_dict(json.load(f))
    except (OSError, ValueError, KeyError, TypeError) as e:
        print(f"error: failed to read {args.path}: {e}", file=sys.stderr)
        return 2
    write_midi(args.output, progression, ticks_per_quarter=args.tpq)
    print(f"wrote {len(progression.notes)} notes to {args.output}")
    return 0


def cmd_automap(args: argparse.Namespace) -> int:
    registry = _load_registry(args.samples)
    if not len(registry):
        print("error: no samples could be loaded", file=sys.stderr)
        return 2

    config = MappingConfig(use_pitch_estimate=not args.no_pitch)
    result = auto_map([s.id for s in registry], registry, name=args.name, instrument_id=Path(args.output).stem, config=config)
    write_program_file(args.output, result.program, registry=registry, created=datetime.now())

    for m in result.mapped:
        print(f" {registry.get(m.sample_id).name}: root {midi_to_note_name(m.root_note)} ({m.root_source}), velocity {m.velocity}")
    print(f"wrote {len(result.program.keygroups)} keygroups to {args.output}")
    if result.issues:
        for issue in result.issues:
            print(f" - {issue.message}")
        return 1
    return 0


def cmd_analyze(args: argparse.Namespace) -> int:
    registry = _load_registry(args.samples)
    if not len(registry):
        print("error: no samples could be loaded", file=sys.stderr)
        return 2

    check = check_samples(registry)
    if args.json:
        doc = {
            "samples": [analyze_sample(s).to_dict() for s in registry],
            "issues": [i.to_dict() for i in check.issues],
        }
        print(json.dumps(doc, indent=2))
    else:
        for s in registry:
            a = analyze_sample(s)
            if not a.valid:
                print(f" {a.name}: {a.error}")
                continue
            pitch = a.pitch.note if a.pitch else "?"
            print(
                f" {a.name}: {a.channels}ch {a.sample_rate}Hz {a.duration:.2f}s"
                f" peak {a.stats.peak:.2f} rms {a.stats.rms:.2f} pitch {pitch}"
            )
        for issue in check.issues:
            print(f" - {registry.get(issue.sample_id).name}: {issue.message}")
    return 1 if check.issues else 0


def cmd_edit(args: argparse.Namespace) -> int:
    registry = _load_registry(args.samples)
    if not len(registry):
        print("error: no samples could be loaded", file=sys.stderr)
        return 2

    options = EditOptions(
        normalize=args.normalize,
        trim_silence=args.trim,
        silence_threshold=args.threshold,
        fade_in_ms=args.fade_in,
        fade_out_ms=args.fade_out,
    )
    result = process_samples(registry, [s.id for s in registry], options)
    for sid, reason in result.failed:
        print(f" - {sid}: {reason}")

    out_dir = Path(args.output)
    out_dir.mkdir(parents=True, exist_ok=True)
    written = set()
    for sid in result.processed:
        sample = registry.get(sid)
        name = sample.name if sample.name not in written else f"{sid}_{sample.name}"
        written.add(name)
        write_audio(out_dir / name, sample)
    print(f"wrote {len(result.processed)} samples to {out_dir}")
    return 1 if result.failed else 0


def cmd_repair(args: argparse.Namespace) -> int:
    try:
        with open(args.path, "r", encoding="utf-8", errors="replace") as f:
            text = f.read()
    except OSError as e:
        print(f"error: failed to read {args.path}: {e}", file=sys.stderr)
        return 2

    result = repair_document(text)
    if not result.fixes:
        print("ok: nothing to repair")
        return 0
    for fix in result.fixes:
        print(f" - {fix}")
    if args.write:
        with open(args.path, "w", encoding="utf-8") as f:
            f.write(result.text)
        print(f"wrote repaired document to {args.path}")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    registry = _load_registry(args.samples or [])
    try:
        read = read_program_file(args.path, registry=registry)
    except (FormatError, OSError) as e:
        print(f"error: failed to read {args.path}: {e}", file=sys.stderr)
        return 2

    program = read.program
    if isinstance(program, Instrument):
        report = validate_instrument(program, registry)
        issues = report.issues
    else:
        issues = read.issues

    if args.json:
        print(json.dumps({"status": "invalid" if issues else "valid", "issues": [i.to_dict() for i in issues]}, indent=2))
    elif issues:
        print(f"invalid {program.kind}:")
        for i in issues:
            print(f" - {i.message}")
    else:
        print(f"ok: valid {program.kind}")
    return 1 if issues else 0


def cmd_inspect(args: argparse.Namespace) -> int:
    try:
        read = read_program_file(args.path)
    except (FormatError, OSError) as e:
        print(f"error: failed to read {args.path}: {e}", file=sys.stderr)
        return 2
    for line in describe_program(read.program):
        print(line)
    for fix in read.fixes:
        print(f" repaired: {fix}")
    return 0


def describe_program(program: Program) -> List[str]:
    lines = [f"{program.kind} {program.name!r}"]
    if isinstance(program, DrumKit):
        for pad in program.pads:
            if pad.sample_id:
                lines.append(f"  {pad.label}: {pad.sample_id}")
        return lines
    for kg in program.keygroups:
        root = midi_to_note_name(kg.root_note) if kg.root_note is not None else "?"
        lines.append(f"  {kg.id}: {midi_to_note_name(kg.low_note)}..{midi_to_note_name(kg.high_note)} root {root}")
        for layer in kg.velocity_layers:
            vel = f"{layer.low_velocity}..{layer.high_velocity}" if layer.has_range else "no range"
            lines.append(f"    {layer.id}: {vel} {layer.sample_id or '(empty)'}")
    return lines


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="xpmkit", description="MIDI import and keygroup program tools")
    ap.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p_midi = sub.add_parser("midi", help="Convert a Standard MIDI File to a pattern JSON document")
    p_midi.add_argument("path")
    p_midi.add_argument("--pads", action="store_true", help="Emit a pad pattern grouped by channel")
    p_midi.add_argument("--pad-map", help="JSON file mapping note numbers to pads")
    p_midi.add_argument("--output", "-o")
    p_midi.set_defaults(func=cmd_midi)

    p_render = sub.add_parser("render", help="Write a progression JSON document back to a MIDI file")
    p_render.add_argument("path")
    p_render.add_argument("--output", "-o", required=True)
    p_render.add_argument("--tpq", type=int, default=DEFAULT_TICKS_PER_QUARTER, help="Ticks per quarter note of the note times")
    p_render.set_defaults(func=cmd_render)

    p_auto = sub.add_parser("automap", help="Build a keygroup program from audio files")
    p_auto.add_argument("samples", nargs="+", help="Audio files or directories")
    p_auto.add_argument("--output", "-o", required=True)
    p_auto.add_argument("--name", default="Auto Mapped")
    p_auto.add_argument("--no-pitch", action="store_true", help="Do not estimate pitch from audio")
    p_auto.set_defaults(func=cmd_automap)

    p_analyze = sub.add_parser("analyze", help="Print level statistics and flag suspicious samples")
    p_analyze.add_argument("samples", nargs="+", help="Audio files or directories")
    p_analyze.add_argument("--json", action="store_true")
    p_analyze.set_defaults(func=cmd_analyze)

    p_edit = sub.add_parser("edit", help="Normalize, trim and fade samples into a new directory")
    p_edit.add_argument("samples", nargs="+", help="Audio files or directories")
    p_edit.add_argument("--output", "-o", required=True, help="Directory for the edited files")
    p_edit.add_argument("--normalize", action="store_true")
    p_edit.add_argument("--trim", action="store_true", help="Trim leading and trailing silence")
    p_edit.add_argument("--threshold", type=float, default=SILENCE_THRESHOLD, help="Silence threshold for --trim")
    p_edit.add_argument("--fade-in", type=float, default=0.0, help="Fade-in length in ms")
    p_edit.add_argument("--fade-out", type=float, default=0.0, help="Fade-out length in ms")
    p_edit.set_defaults(func=cmd_edit)

    p_repair = sub.add_parser("repair", help="Fix common damage in an .xpm document")
    p_repair.add_argument("path")
    p_repair.add_argument("--write", "-w", action="store_true", help="Rewrite the file in place")
    p_repair.set_defaults(func=cmd_repair)

    p_val = sub.add_parser("validate", help="Validate a program against its samples")
    p_val.add_argument("path")
    p_val.add_argument("--samples", "-s", nargs="*", help="Audio files or directories")
    p_val.add_argument("--json", action="store_true")
    p_val.set_defaults(func=cmd_validate)

    p_inspect = sub.add_parser("inspect", help="Print a program summary")
    p_inspect.add_argument("path")
    p_inspect.set_defaults(func=cmd_inspect)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
