"""Reader/writer for sampler program documents (.xpm).

Reading is two independent passes:

1. `repair_document` works on raw text: adds a missing XML declaration, fills
   a missing Sample `path`/`name` from the other one, and appends closing tags
   for elements that were opened more often than closed.
2. `parse_document` builds an element tree with a tolerant tag-level parser
   (mismatched closes are resolved against the open stack, strays dropped).

`read_program` runs both and maps the tree onto the program model.
"""

from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union
from xml.sax.saxutils import escape, unescape

from xpmkit.errors import FormatError, Issue
from xpmkit.models import (
    BANKS,
    PADS_PER_BANK,
    DrumKit,
    Instrument,
    Keygroup,
    Program,
    SampleRegistry,
    VelocityLayer,
    new_drum_kit,
)

log = logging.getLogger(__name__)

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'
DEFAULT_PROGRAM_NAME = "Imported Program"
SAMPLE_DIR = "samples"

# Innermost first, so appended closing tags nest correctly.
KNOWN_ELEMENTS = (
    "Sample",
    "Settings",
    "KeyRange",
    "VelocityRange",
    "Zone",
    "Keygroup",
    "Keygroups",
    "Pad",
    "Pads",
    "DrumKit",
    "Name",
    "Type",
    "Created",
    "ProgramInfo",
    "KeygroupProgram",
    "DrumProgram",
    "PluginProgram",
)

# Opening one of these while the same element is still open closes the older one.
NON_NESTING = {"Zone", "Pad", "Keygroup", "Sample"}

_ESCAPES = {'"': "&quot;"}
_UNESCAPES = {"&quot;": '"', "&apos;": "'"}

_TOKEN_RE = re.compile(
    r"<!--.*?-->"
    r"|<\?.*?\?>"
    r"|<!\[CDATA\[(?P<cdata>.*?)\]\]>"
    r"|<!.*?>"
    r"|</\s*(?P<close>[A-Za-z_][\w.:-]*)\s*>"
    r"|<(?P<open>[A-Za-z_][\w.:-]*)(?P<attrs>(?:\s[^<>]*?)?)\s*(?P<selfclose>/?)>",
    re.S,
)
_ATTR_RE = re.compile(r"([A-Za-z_][\w.:-]*)\s*=\s*(?:\"([^\"]*)\"|'([^']*)')")
_SAMPLE_TAG_RE = re.compile(r"<Sample(?P<attrs>(?:\s[^<>]*?)?)\s*(?P<selfclose>/?)>")
_UNSAFE_PATH_CHARS = re.compile(r'[\\/:*?"<>|]')


# --- Repair pass ---


@dataclass
class RepairResult:
    text: str
    fixes: List[str] = field(default_factory=list)


def repair_document(text: str) -> RepairResult:
    fixes: List[str] = []

    if "<?xml" not in text:
        text = XML_DECLARATION + "\n" + text.lstrip("\ufeff")
        fixes.append("added XML declaration")

    def fill_sample(m: re.Match) -> str:
        attrs = m.group("attrs") or ""
        close = "/>" if m.group("selfclose") else ">"
        found = _parse_attrs(attrs)
        if "path" not in found and found.get("name"):
            fixes.append(f"added path to Sample {found['name']!r}")
            return f'<Sample{attrs} path="{_attr(found["name"])}"{close}'
        if "name" not in found and found.get("path"):
            name = _basename(found["path"])
            fixes.append(f"added name to Sample {name!r}")
            return f'<Sample{attrs} name="{_attr(name)}"{close}'
        return m.group(0)

    text = _SAMPLE_TAG_RE.sub(fill_sample, text)

    missing: List[Tuple[str, int]] = []
    for tag in KNOWN_ELEMENTS:
        opens, closes = count_element(text, tag)
        if opens > closes:
            missing.append((tag, opens - closes))
    if missing:
        if not text.endswith("\n"):
            text += "\n"
        for tag, n in missing:
            text += f"</{tag}>\n" * n
            fixes.append(f"closed {n} <{tag}> element(s)")

    for fix in fixes:
        log.debug("repair: %s", fix)
    return RepairResult(text=text, fixes=fixes)


def count_element(text: str, tag: str) -> Tuple[int, int]:
    """(non-self-closing opens, closes) of `tag` in raw text."""
    opens = 0
    for m in re.finditer(rf"<{re.escape(tag)}(?:\s[^<>]*?)?\s*(/?)>", text):
        if not m.group(1):
            opens += 1
    closes = len(re.findall(rf"</\s*{re.escape(tag)}\s*>", text))
    return opens, closes


# --- Structural pass ---


@dataclass
class Element:
    tag: str
    attrs: Dict[str, str] = field(default_factory=dict)
    children: List["Element"] = field(default_factory=list)
    text: str = ""

    def find(self, tag: str) -> Optional["Element"]:
        for child in self.children:
            if child.tag == tag:
                return child
        return None

    def findall(self, tag: str) -> List["Element"]:
        return [c for c in self.children if c.tag == tag]

    def iter(self, tag: Optional[str] = None) -> Iterator["Element"]:
        for child in self.children:
            if tag is None or child.tag == tag:
                yield child
            yield from child.iter(tag)

    def find_deep(self, tag: str) -> Optional["Element"]:
        return next(self.iter(tag), None)

    def child_text(self, tag: str) -> Optional[str]:
        el = self.find(tag)
        return el.text.strip() if el is not None else None


def parse_document(text: str) -> Element:
    """Tolerant parse into a tree rooted at a synthetic '#document' element."""
    doc = Element("#document")
    stack: List[Element] = [doc]
    pos = 0
    for m in _TOKEN_RE.finditer(text):
        _append_text(stack[-1], text[pos:m.start()])
        pos = m.end()
        if m.group("cdata") is not None:
            stack[-1].text += m.group("cdata")
        elif m.group("close"):
            tag = m.group("close")
            depth = _open_depth(stack, tag)
            if depth is None:
                log.debug("dropping stray </%s>", tag)
                continue
            del stack[depth:]
        elif m.group("open"):
            tag = m.group("open")
            if tag in NON_NESTING:
                depth = _open_depth(stack, tag)
                if depth is not None:
                    del stack[depth:]
            el = Element(tag=tag, attrs=_parse_attrs(m.group("attrs") or ""))
            stack[-1].children.append(el)
            if not m.group("selfclose"):
                stack.append(el)
    _append_text(stack[-1], text[pos:])
    return doc


def _open_depth(stack: List[Element], tag: str) -> Optional[int]:
    for i in range(len(stack) - 1, 0, -1):
        if stack[i].tag == tag:
            return i
    return None


def _append_text(el: Element, raw: str) -> None:
    if raw and el.tag != "#document":
        el.text += unescape(raw, _UNESCAPES)


def _parse_attrs(raw: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for m in _ATTR_RE.finditer(raw):
        value = m.group(2) if m.group(2) is not None else m.group(3)
        out[m.group(1)] = unescape(value, _UNESCAPES)
    return out


# --- Reader ---


@dataclass
class ReadResult:
    program: Program
    issues: List[Issue] = field(default_factory=list)
    fixes: List[str] = field(default_factory=list)


def read_program(text: str, registry: Optional[SampleRegistry] = None, program_id: str = "program_0") -> ReadResult:
    repaired = repair_document(text)
    doc = parse_document(repaired.text)
    root = next(iter(doc.children), None)
    if root is None:
        raise FormatError("document has no root element")

    issues: List[Issue] = []
    name = root.attrs.get("name") or _info_text(root, "Name") or DEFAULT_PROGRAM_NAME
    kind = _program_kind(root)
    if kind == "drumkit":
        program: Program = _read_drum_kit(root, name, program_id, registry, issues)
    else:
        program = _read_instrument(root, name, program_id, registry, issues)
    return ReadResult(program=program, issues=issues, fixes=repaired.fixes)


def read_program_file(path: Union[str, Path], registry: Optional[SampleRegistry] = None) -> ReadResult:
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        text = f.read()
    return read_program(text, registry=registry, program_id=Path(path).stem)


def _program_kind(root: Element) -> str:
    if root.tag == "DrumProgram":
        return "drumkit"
    if root.tag == "KeygroupProgram":
        return "instrument"
    if root.tag == "PluginProgram":
        declared = root.attrs.get("type") or _info_text(root, "Type") or ""
        return "drumkit" if declared.lower() == "drumkit" else "instrument"
    if root.find_deep("Pad") is not None:
        return "drumkit"
    if root.find_deep("Keygroup") is not None or root.find_deep("Zone") is not None:
        return "instrument"
    raise FormatError(f"unrecognized program root element <{root.tag}>")


def _info_text(root: Element, tag: str) -> Optional[str]:
    info = root.find("ProgramInfo")
    if info is None:
        return None
    return info.child_text(tag) or None


def _int_attr(attrs: Dict[str, str], *keys: str) -> Optional[int]:
    for key in keys:
        raw = attrs.get(key)
        if raw is None:
            continue
        try:
            return int(float(raw))
        except (ValueError, OverflowError):
            log.debug("ignoring non-numeric %s=%r", key, raw)
    return None


def _sample_ref(el: Element, legacy_attr: str) -> Tuple[Optional[str], Optional[str]]:
    """(sample id, file name) referenced by a Zone or Pad."""
    sample = el.find("Sample")
    if sample is not None:
        name = sample.attrs.get("name") or _basename(sample.attrs.get("path", "")) or None
        return sample.attrs.get("id") or None, name
    raw = el.attrs.get(legacy_attr)
    return None, _basename(raw) if raw else None


def _resolve(
    ref: Tuple[Optional[str], Optional[str]],
    registry: Optional[SampleRegistry],
    issues: List[Issue],
) -> Optional[str]:
    sample_id, name = ref
    if registry is None or (sample_id is None and name is None):
        return sample_id or name

    # the id wins unless the registry holds a different file under it
    by_id = registry.get(sample_id) if sample_id else None
    if by_id is not None and (name is None or by_id.name.lower() == name.lower()):
        return by_id.id
    by_name = registry.find_by_name(name) if name else None
    if by_name is not None:
        return by_name.id
    if by_id is not None:
        return by_id.id
    if name in registry:
        return name

    label = name or sample_id
    issues.append(Issue("missing_sample", f"Sample {label!r} not found in registry.", sample_id=sample_id or name))
    log.warning("sample %r referenced by program is not in the registry", label)
    return sample_id or name


def _read_instrument(
    root: Element,
    name: str,
    program_id: str,
    registry: Optional[SampleRegistry],
    issues: List[Issue],
) -> Instrument:
    keygroup_els = list(root.iter("Keygroup"))
    if not keygroup_els:
        # bare zones directly under the program
        holder = Element("Keygroup", children=list(root.iter("Zone")))
        keygroup_els = [holder] if holder.children else []

    keygroups: List[Keygroup] = []
    for kg_el in keygroup_els:
        # zones with different key ranges inside one element become separate keygroups
        groups: Dict[Tuple[int, int, Optional[int]], List[VelocityLayer]] = {}
        for zone in kg_el.iter("Zone"):
            vr = zone.find("VelocityRange")
            if vr is not None:
                low_vel, high_vel = _int_attr(vr.attrs, "low"), _int_attr(vr.attrs, "high")
            else:
                low_vel, high_vel = _int_attr(zone.attrs, "vel_low"), _int_attr(zone.attrs, "vel_high")
            layer = VelocityLayer(
                id="",
                low_velocity=low_vel,
                high_velocity=high_vel,
                sample_id=_resolve(_sample_ref(zone, "file"), registry, issues),
            )
            groups.setdefault(_zone_key_range(zone, kg_el), []).append(layer)
        if not groups:
            groups[_zone_key_range(kg_el, kg_el)] = []

        for (low, high, root_note), layers in groups.items():
            i = len(keygroups)
            for j, layer in enumerate(layers):
                layer.id = f"velocity_{i}_{j}"
            keygroups.append(Keygroup(id=f"keygroup_{i}", low_note=low, high_note=high, root_note=root_note, velocity_layers=layers))

    return Instrument(id=program_id, name=name, keygroups=keygroups)


def _zone_key_range(zone: Element, keygroup: Element) -> Tuple[int, int, Optional[int]]:
    kr = zone.find("KeyRange")
    sources = [kr.attrs] if kr is not None else []
    sources += [zone.attrs, keygroup.attrs]
    low = next((v for v in (_int_attr(s, "low") for s in sources) if v is not None), 0)
    high = next((v for v in (_int_attr(s, "high") for s in sources) if v is not None), 127)
    root = next((v for v in (_int_attr(s, "root") for s in sources) if v is not None), None)
    return low, high, root


def _read_drum_kit(
    root: Element,
    name: str,
    program_id: str,
    registry: Optional[SampleRegistry],
    issues: List[Issue],
) -> DrumKit:
    kit = new_drum_kit(program_id, name)
    for k, pad_el in enumerate(root.iter("Pad")):
        index = _pad_index(pad_el, k)
        if index is None or not (0 <= index < len(kit.pads)):
            issues.append(Issue("invalid_pad", f"Pad {pad_el.attrs} is outside the {len(kit.pads)}-pad table."))
            continue
        pad = kit.pads[index]
        label = pad_el.attrs.get("label")
        if label:
            pad.label = label
        pad.sample_id = _resolve(_sample_ref(pad_el, "sample"), registry, issues)
    return kit


def _pad_index(pad_el: Element, position: int) -> Optional[int]:
    index = _int_attr(pad_el.attrs, "padIndex", "index")
    if index is not None:
        return index
    pad_id = pad_el.attrs.get("id")
    if pad_id:
        m = re.fullmatch(r"([A-Ha-h])(\d{1,2})", pad_id.strip())
        if m:
            return BANKS.index(m.group(1).upper()) * PADS_PER_BANK + int(m.group(2)) - 1
        try:
            return int(pad_id)
        except ValueError:
            return None
    return position


# --- Writer ---


def write_program(program: Program, registry: Optional[SampleRegistry] = None, created: Optional[datetime] = None) -> str:
    """Serialize a program. Output is always well formed."""
    if isinstance(program, DrumKit):
        root, kind = "DrumProgram", "drumkit"
    else:
        root, kind = "KeygroupProgram", "instrument"

    lines = [XML_DECLARATION, f'<{root} name="{_attr(program.name)}">']
    lines.append("  <ProgramInfo>")
    lines.append(f"    <Name>{escape(program.name)}</Name>")
    lines.append(f"    <Type>{kind}</Type>")
    if created is not None:
        lines.append(f"    <Created>{created.isoformat()}</Created>")
    lines.append("  </ProgramInfo>")

    if isinstance(program, DrumKit):
        lines.append("  <Pads>")
        for pad in program.pads:
            if not pad.sample_id:
                continue
            lines.append(f'    <Pad padIndex="{pad.index}" label="{_attr(pad.label)}">')
            lines.append("      " + _sample_tag(pad.sample_id, registry))
            lines.append("    </Pad>")
        lines.append("  </Pads>")
    else:
        lines.append("  <Keygroups>")
        for i, kg in enumerate(program.keygroups):
            key_attrs = f'low="{kg.low_note}" high="{kg.high_note}"'
            if kg.root_note is not None:
                key_attrs = f'root="{kg.root_note}" ' + key_attrs
            lines.append(f'    <Keygroup index="{i}" {key_attrs}>')
            for layer in kg.velocity_layers:
                lines.append("      <Zone>")
                if layer.sample_id:
                    lines.append("        " + _sample_tag(layer.sample_id, registry))
                lines.append(f"        <KeyRange {key_attrs}/>")
                if layer.has_range:
                    lines.append(f'        <VelocityRange low="{layer.low_velocity}" high="{layer.high_velocity}"/>')
                lines.append("      </Zone>")
            lines.append("    </Keygroup>")
        lines.append("  </Keygroups>")

    lines.append(f"</{root}>")
    return "\n".join(lines) + "\n"


def write_program_file(
    path: Union[str, Path],
    program: Program,
    registry: Optional[SampleRegistry] = None,
    created: Optional[datetime] = None,
) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(write_program(program, registry=registry, created=created))


def sample_path(name: str) -> str:
    return f"{SAMPLE_DIR}/{_UNSAFE_PATH_CHARS.sub('_', name)}"


def _sample_tag(sample_id: str, registry: Optional[SampleRegistry]) -> str:
    name = sample_id
    if registry is not None:
        sample = registry.get(sample_id)
        if sample is None:
            log.warning("sample %s is not in the registry; writing its id as the name", sample_id)
        else:
            name = sample.name
    return f'<Sample id="{_attr(sample_id)}" name="{_attr(name)}" path="{_attr(sample_path(name))}"/>'


def _attr(value: str) -> str:
    return escape(str(value), _ESCAPES)


def _basename(path: str) -> str:
    return posixpath.basename(path.replace("\\", "/"))
