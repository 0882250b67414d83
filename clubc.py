#!/usr/bin/env python3
import sys, json, argparse, logging, re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, IO, Iterator, List, Mapping, Optional, Sequence, Tuple, Union
from lark import Lark, Transformer, UnexpectedInput

LOGGER = logging.getLogger(__name__)

# One source line: comma separated fields, ';' starts a comment. Fields may be empty.
LINE_GRAMMAR = r"""
start: field ("," field)*
field: FIELD?

FIELD: /[^,;\n]+/
COMMENT: /;[^\n]*/

%ignore COMMENT
"""

BLOCK_OPCODES = ("L", "CLUBS")
END = "E"
TIME_COMMENT = "    ; time {}"

_INT = re.compile(r"[+-]?[0-9]+")
_DIGITS = re.compile(r"[0-9]+")


class ClubScriptError(Exception):
    """Base class for errors in a club script; carries the 1-based line number when known."""

    def __init__(self, msg:str, line_no:Optional[int]=None):
        super().__init__(msg)
        self.msg = msg
        self.line_no = line_no

    def __str__(self):
        if self.line_no is None: return f"Error: {self.msg}"
        return f"Error in line {self.line_no}: {self.msg}"

class ScriptSyntaxError(ClubScriptError):
    pass

class ResolveError(ClubScriptError):
    pass

class TimeOrderError(ResolveError):
    def __init__(self, msg:str, line_no:Optional[int]=None, current:int=0):
        super().__init__(msg, line_no)
        self.current = current

class LabelError(ClubScriptError):
    pass

class InternalError(RuntimeError):
    """Broken tree invariant. Points at a bug in a pass, not at the script."""

    def __init__(self, msg:str, line_no:Optional[int]=None):
        super().__init__(msg)
        self.msg = msg
        self.line_no = line_no

    def __str__(self):
        where = f" in line {self.line_no}" if self.line_no is not None else ""
        return f"Internal error{where}: {self.msg}"


@dataclass(frozen=True)
class Command:
    line: str
    line_no: int
    fields: Tuple[str, ...]
    children: Tuple["Command", ...] = ()
    end_line: Optional[str] = None

    def __post_init__(self):
        if self.children and self.end_line is None:
            raise InternalError(f"{self.op} has sub-commands but no closing line", self.line_no)

    @property
    def op(self)->str: return self.fields[0]

    @property
    def is_block(self)->bool: return self.op in BLOCK_OPCODES

Program = Tuple[Command, ...]


@dataclass(frozen=True)
class Color:
    r: int
    g: int
    b: int

    def scaled(self, percent:int)->"Color":
        p = percent / 100.0
        return Color(int(self.r * p), int(self.g * p), int(self.b * p))

    def channels(self)->Tuple[str, str, str]:
        return (str(self.r), str(self.g), str(self.b))


@dataclass(frozen=True)
class Label:
    start: int
    end: int


# --- numbers ---------------------------------------------------------------

def parse_number(text:str, line_no:Optional[int]=None)->int:
    if not _INT.fullmatch(text):
        raise ScriptSyntaxError(f"expected a number, got {text!r}", line_no)
    return int(text)

def parse_count(text:str, line_no:Optional[int]=None)->int:
    n = parse_number(text, line_no)
    if n == 0: raise ScriptSyntaxError("count can't be zero", line_no)
    return n

def _field(fields:Sequence[str], i:int, line_no:Optional[int])->str:
    if i >= len(fields) or fields[i] == "":
        raise ScriptSyntaxError(f"{fields[0]} is missing field {i}", line_no)
    return fields[i]


# --- parser ----------------------------------------------------------------

class _Fields(Transformer):
    def field(self, xs): return xs[0].value.strip(" \t") if xs else ""
    def start(self, xs): return tuple(xs)

_LINE_PARSER = Lark(LINE_GRAMMAR, start="start", parser="lalr")

def split_line(line:str, line_no:Optional[int]=None)->Tuple[str, ...]:
    try:
        tree = _LINE_PARSER.parse(line)
    except UnexpectedInput as e:
        raise ScriptSyntaxError(f"cannot split line: {e}", line_no) from e
    return _Fields().transform(tree)

def _check_fields(fields:Tuple[str, ...], line_no:int):
    op = fields[0]
    if op == "L":
        parse_count(_field(fields, 1, line_no), line_no)
    elif op == "CLUBS":
        _field(fields, 1, line_no)
        for f in fields[1:]: parse_count(f, line_no)
    elif op == "D":
        parse_number(_field(fields, 1, line_no), line_no)
    elif op == "RAMP":
        if len(fields) not in (3, 5):
            raise ScriptSyntaxError("RAMP takes a color (name or r,g,b) and a duration", line_no)
        parse_number(fields[-1], line_no)
    elif op == "TIME":
        _field(fields, 1, line_no)

def _parse_block(lines:Sequence[str], pos:int)->Tuple[Program, int]:
    commands = []
    while pos < len(lines):
        fields = split_line(lines[pos], pos + 1)
        if fields[0] == END: break
        cmd, pos = _parse_command(lines, pos, fields)
        commands.append(cmd)
    return tuple(commands), pos

def _parse_command(lines:Sequence[str], pos:int, fields:Tuple[str, ...])->Tuple[Command, int]:
    line_no = pos + 1
    _check_fields(fields, line_no)
    if fields[0] not in BLOCK_OPCODES:
        return Command(lines[pos], line_no, fields), pos + 1
    children, end = _parse_block(lines, pos + 1)
    if end >= len(lines):
        raise ScriptSyntaxError(f"unterminated {fields[0]} block", line_no)
    return Command(lines[pos], line_no, fields, children, lines[end]), end + 1

def parse_lines(lines:Sequence[str])->Program:
    commands, pos = _parse_block(lines, 0)
    if pos < len(lines):
        raise ScriptSyntaxError("E without L", pos + 1)
    LOGGER.debug("parsed %d lines into %d top-level commands", len(lines), len(commands))
    return commands

def parse_text(text:str)->Program:
    return parse_lines(text.splitlines())


# --- durations -------------------------------------------------------------

def duration(cmd:Command)->int:
    op = cmd.op
    if op == "D": return parse_number(_field(cmd.fields, 1, cmd.line_no), cmd.line_no)
    if op == "RAMP": return parse_number(cmd.fields[-1], cmd.line_no)
    if op == "L":
        count = parse_count(_field(cmd.fields, 1, cmd.line_no), cmd.line_no)
        return count * sum(duration(c) for c in cmd.children)
    if op == "TIME":
        raise ResolveError("TIME not supported here", cmd.line_no)
    if cmd.is_block or cmd.children:
        raise InternalError(f"unexpected sub-commands in {op}", cmd.line_no)
    return 0

def total_duration(program:Program)->int:
    return sum(duration(c) for c in program)


# --- club specialization ---------------------------------------------------

def specialize(program:Program, club:int)->Program:
    out: List[Command] = []
    for cmd in program:
        if cmd.op == "CLUBS":
            ids = [parse_count(f, cmd.line_no) for f in cmd.fields[1:]]
            if club in ids: out.extend(specialize(cmd.children, club))
        elif cmd.is_block:
            out.append(replace(cmd, children=specialize(cmd.children, club)))
        else:
            out.append(cmd)
    return tuple(out)


# --- colors ----------------------------------------------------------------

def parse_color_expr(text:str)->Tuple[str, Optional[int]]:
    """Split ``name`` or ``name <percent>%`` into (name, percent)."""
    parts = text.rsplit(None, 1)
    if len(parts) == 2 and parts[1].endswith("%") and _DIGITS.fullmatch(parts[1][:-1]):
        return parts[0], int(parts[1][:-1])
    return text, None

def lookup_color(colors:Mapping[str, Color], text:str, line_no:Optional[int]=None)->Color:
    name, percent = parse_color_expr(text)
    color = colors.get(name)
    if color is None:
        raise ResolveError(f"color {name} not defined", line_no)
    return color if percent is None else color.scaled(percent)

def _define_color(colors:Mapping[str, Color], cmd:Command)->Mapping[str, Color]:
    name = _field(cmd.fields, 1, cmd.line_no)
    if name in colors:
        raise ResolveError(f"color {name} redefined", cmd.line_no)
    if len(cmd.fields) == 3:
        color = lookup_color(colors, cmd.fields[2], cmd.line_no)
    elif len(cmd.fields) == 5:
        color = Color(*(parse_number(f, cmd.line_no) for f in cmd.fields[2:5]))
    else:
        raise ScriptSyntaxError("COLOR takes a name and either a color or r,g,b", cmd.line_no)
    LOGGER.debug("color %s = %s", name, color)
    return {**colors, name: color}

def _with_fields(cmd:Command, fields:Tuple[str, ...])->Command:
    return replace(cmd, fields=fields, line=",".join(fields))

def _resolve_color_refs(cmd:Command, colors:Mapping[str, Color])->Command:
    if cmd.op == "COLOR":
        raise ResolveError("can't define colors here", cmd.line_no)
    if cmd.op == "C" and len(cmd.fields) == 2:
        return _with_fields(cmd, ("C", *lookup_color(colors, cmd.fields[1], cmd.line_no).channels()))
    if cmd.op == "RAMP" and len(cmd.fields) == 3:
        rgb = lookup_color(colors, cmd.fields[1], cmd.line_no).channels()
        return _with_fields(cmd, ("RAMP", *rgb, cmd.fields[2]))
    if cmd.is_block:
        return replace(cmd, children=tuple(_resolve_color_refs(c, colors) for c in cmd.children))
    return cmd

def resolve_colors(program:Program)->Program:
    # Only this top-level loop can grow the namespace; nested scopes just read it.
    colors: Mapping[str, Color] = {}
    out: List[Command] = []
    for cmd in program:
        if cmd.op == "COLOR": colors = _define_color(colors, cmd)
        else: out.append(_resolve_color_refs(cmd, colors))
    return tuple(out)


# --- labels ----------------------------------------------------------------

def resolve_labels(program:Program, labels:Mapping[str, Label])->Program:
    out: List[Command] = []
    for cmd in program:
        if cmd.op == "TIME":
            target = _field(cmd.fields, 1, cmd.line_no)
            if not _DIGITS.fullmatch(target):
                label = labels.get(target)
                if label is None:
                    raise ResolveError(f"label {target} not defined", cmd.line_no)
                cmd = _with_fields(cmd, ("TIME", str(label.start)))
        elif cmd.is_block:
            cmd = replace(cmd, children=resolve_labels(cmd.children, labels))
        out.append(cmd)
    return tuple(out)

def _local_name(tag:str)->str:
    return tag.rsplit("}", 1)[-1]

def _centiseconds(text:str, title:str)->int:
    try:
        return int(float(text) * 100)
    except ValueError as e:
        raise LabelError(f"label {title} has a bad time {text!r}") from e

def read_labels(source:Union[str, Path, IO])->Dict[str, Label]:
    """Read the label track(s) of an Audacity project into name -> Label (centiseconds)."""
    try:
        root = ET.parse(source).getroot()
    except ET.ParseError as e:
        raise LabelError(f"malformed label project: {e}") from e
    labels: Dict[str, Label] = {}
    for track in root:
        if _local_name(track.tag) != "labeltrack": continue
        for el in track:
            if _local_name(el.tag) != "label": continue
            title = el.get("title", "")
            if title in labels:
                raise LabelError(f"label {title} defined more than once")
            labels[title] = Label(_centiseconds(el.get("t", "0"), title), _centiseconds(el.get("t1", "0"), title))
    LOGGER.debug("read %d labels", len(labels))
    return labels


# --- time ------------------------------------------------------------------

def resolve_time(program:Program)->Program:
    out: List[Command] = []
    now = 0
    for cmd in program:
        if cmd.op != "TIME":
            out.append(cmd)
            now += duration(cmd)
            continue
        target = parse_number(_field(cmd.fields, 1, cmd.line_no), cmd.line_no)
        if target < now:
            raise TimeOrderError(f"cannot go back in time - it's already {now}", cmd.line_no, current=now)
        if target == now: continue
        fields = ("D", str(target - now))
        out.append(Command(",".join(fields), cmd.line_no, fields))
        now = target
    return tuple(out)


# --- pipeline --------------------------------------------------------------

def compile_program(program:Program, club:int=1, labels:Optional[Mapping[str, Label]]=None)->Program:
    specialized = specialize(program, club)
    LOGGER.debug("specialized for club %d: %d commands", club, len(specialized))
    colored = resolve_colors(specialized)
    LOGGER.debug("colors resolved: %d commands", len(colored))
    delabeled = resolve_labels(colored, labels or {})
    resolved = resolve_time(delabeled)
    LOGGER.debug("time resolved: %d commands", len(resolved))
    return resolved

def compile_text(text:str, club:int=1, labels:Optional[Mapping[str, Label]]=None)->Program:
    return compile_program(parse_text(text), club, labels)


# --- output ----------------------------------------------------------------

def render(program:Program)->Iterator[str]:
    for cmd in program:
        yield cmd.line
        if cmd.end_line is not None:
            yield from render(cmd.children)
            yield cmd.end_line

def annotate(program:Program)->Iterator[str]:
    now = 0
    for cmd in program:
        yield from render((cmd,))
        d = duration(cmd)
        if d > 0:
            now += d
            yield TIME_COMMENT.format(now)

def timeline(program:Program)->Iterator[Dict[str, Any]]:
    now = 0
    for cmd in program:
        d = duration(cmd)
        yield {"t": now, "duration": d, "line_no": cmd.line_no, "line": cmd.line}
        now += d

def command_to_dict(cmd:Command)->Dict[str, Any]:
    out: Dict[str, Any] = {"line_no": cmd.line_no, "op": cmd.op, "args": list(cmd.fields[1:]), "line": cmd.line}
    if cmd.end_line is not None:
        out["children"] = [command_to_dict(c) for c in cmd.children]
        out["end_line"] = cmd.end_line
    return out


# --- cli -------------------------------------------------------------------

def _read_source(name:str)->str:
    if name == "-": return sys.stdin.read()
    return Path(name).read_text()

def _emit(lines:Iterator[str], out:Optional[str]):
    if out:
        Path(out).write_text("".join(ln + "\n" for ln in lines)); print(f"Saved -> {out}")
    else:
        for ln in lines: print(ln)

def _run(args)->int:
    if args.cmd == "labels":
        labels = read_labels(args.file)
        data = {k: {"start": v.start, "end": v.end} for k, v in labels.items()}
        print(json.dumps(data, ensure_ascii=False, indent=2))
        return 0
    program = parse_text(_read_source(args.file))
    if args.cmd == "parse":
        data = json.dumps([command_to_dict(c) for c in program], ensure_ascii=False, indent=2)
        _emit(iter(data.splitlines()), args.out)
        return 0
    labels = read_labels(args.labels) if args.labels else {}
    resolved = compile_program(program, args.club, labels)
    if args.format == "json":
        _emit(iter(json.dumps(list(timeline(resolved)), indent=2).splitlines()), args.out)
    else:
        _emit(annotate(resolved), args.out)
    return 0

def main(argv:Optional[Sequence[str]]=None)->int:
    ap = argparse.ArgumentParser(prog="clubc", description="Compile club scripts into annotated, fully resolved command streams.")
    ap.add_argument("--log-level", default="WARNING", help="Logging verbosity (DEBUG, INFO, WARNING, ERROR)")
    sub = ap.add_subparsers(dest="cmd", required=True)
    p1 = sub.add_parser("compile"); p1.add_argument("file", nargs="?", default="-"); p1.add_argument("-o","--out")
    p1.add_argument("--club", type=int, default=1, help="target club id")
    p1.add_argument("--labels", help="Audacity project (.aup) with the label track")
    p1.add_argument("--format", choices=["text","json"], default="text")
    p2 = sub.add_parser("parse"); p2.add_argument("file", nargs="?", default="-"); p2.add_argument("-o","--out")
    p3 = sub.add_parser("labels"); p3.add_argument("file")
    args = ap.parse_args(argv)

    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
                        format="%(levelname)s %(name)s: %(message)s")
    try:
        return _run(args)
    except ClubScriptError as e:
        print(str(e), file=sys.stderr); return 1
    except InternalError as e:
        print(str(e), file=sys.stderr); return 2
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr); return 1

if __name__ == "__main__":
    sys.exit(main())
