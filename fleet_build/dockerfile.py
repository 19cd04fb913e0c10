"""
Dockerfile parsing and rewriting.

A small instruction-level parser shared by build resolution (template
rendering), QEMU emulation (transposition) and livepush (stage and
COPY/ADD analysis).
"""

import json
import re
import shlex
from dataclasses import dataclass, field

LIVE_DIRECTIVE_RE = re.compile(r"^\s*#dev-(copy|run|cmd-live)=(.*)$")
_FLAG_RE = re.compile(r"^--([a-zA-Z-]+)(?:=(.*))?$")


@dataclass
class Instruction:
    """One Dockerfile instruction with its line continuations joined."""

    keyword: str
    value: str
    lineno: int
    flags: dict[str, str] = field(default_factory=dict)
    json_args: list[str] | None = None

    @property
    def is_exec_form(self) -> bool:
        return self.json_args is not None

    @property
    def args(self) -> list[str]:
        """Arguments as a list: the JSON array, or the shell-split value."""
        if self.json_args is not None:
            return list(self.json_args)
        try:
            return shlex.split(self.value, posix=True)
        except ValueError:
            return self.value.split()

    @property
    def sources(self) -> list[str]:
        """COPY/ADD source paths."""
        return self.args[:-1]

    @property
    def dest(self) -> str:
        """COPY/ADD destination path."""
        args = self.args
        return args[-1] if args else ""

    def to_line(self) -> str:
        flags = "".join(
            f"--{name}={value} " if value != "" else f"--{name} "
            for name, value in self.flags.items()
        )
        if self.json_args is not None:
            return f"{self.keyword} {flags}{json.dumps(self.json_args)}"
        return f"{self.keyword} {flags}{self.value}".rstrip()


@dataclass
class Stage:
    """A build stage: a FROM instruction and everything up to the next one."""

    index: int
    base_image: str
    name: str | None
    instructions: list[Instruction] = field(default_factory=list)

    def matches(self, reference: str) -> bool:
        """Whether ``reference`` (from a ``--from`` flag) names this stage."""
        return reference == str(self.index) or (
            self.name is not None and reference.lower() == self.name.lower()
        )


def _logical_lines(content: str) -> list[tuple[int, str]]:
    """Join continuation lines and drop comments and blank lines."""
    result = []
    buffer: list[str] = []
    start = 0
    for lineno, line in enumerate(content.splitlines(), start=1):
        stripped = line.strip()
        if not buffer and (not stripped or stripped.startswith("#")):
            continue
        if buffer and stripped.startswith("#"):
            continue
        if not buffer:
            start = lineno
        if stripped.endswith("\\"):
            buffer.append(stripped[:-1].strip())
            continue
        buffer.append(stripped)
        result.append((start, " ".join(part for part in buffer if part)))
        buffer = []
    if buffer:
        result.append((start, " ".join(part for part in buffer if part)))
    return result


def parse_instructions(content: str) -> list[Instruction]:
    """Parse Dockerfile content into instructions."""
    instructions = []
    for lineno, line in _logical_lines(content):
        keyword, _, rest = line.partition(" ")
        keyword = keyword.upper()
        rest = rest.strip()
        flags: dict[str, str] = {}
        if keyword in ("COPY", "ADD", "FROM", "RUN"):
            while rest.startswith("--"):
                token, _, remainder = rest.partition(" ")
                match = _FLAG_RE.match(token)
                if not match:
                    break
                flags[match.group(1)] = match.group(2) or ""
                rest = remainder.strip()
        json_args = None
        if rest.startswith("["):
            try:
                parsed = json.loads(rest)
            except ValueError:
                parsed = None
            if isinstance(parsed, list) and all(isinstance(a, str) for a in parsed):
                json_args = parsed
        instructions.append(Instruction(keyword, rest, lineno, flags, json_args))
    return instructions


def parse_stages(instructions: list[Instruction]) -> list[Stage]:
    """Group instructions into stages. Instructions before the first FROM (ARG) are dropped."""
    stages: list[Stage] = []
    for instruction in instructions:
        if instruction.keyword == "FROM":
            args = instruction.value.split()
            name = args[2] if len(args) >= 3 and args[1].lower() == "as" else None
            stages.append(Stage(len(stages), args[0] if args else "", name))
        elif stages:
            stages[-1].instructions.append(instruction)
    return stages


class Dockerfile:
    """Parsed Dockerfile content."""

    def __init__(self, content: str):
        self.content = content
        self.instructions = parse_instructions(content)
        self.stages = parse_stages(self.instructions)

    @property
    def last_stage(self) -> Stage | None:
        return self.stages[-1] if self.stages else None

    def stage_for(self, reference: str) -> Stage | None:
        for stage in self.stages:
            if stage.matches(reference):
                return stage
        return None


def render_template(content: str, variables: dict[str, str]) -> str:
    """Replace ``%%NAME%%`` placeholders with their values. Unknown names are left as-is."""

    def substitute(match: re.Match) -> str:
        return variables.get(match.group(1), match.group(0))

    return re.sub(r"%%([A-Z0-9_]+)%%", substitute, content)


def generate_live_dockerfile(content: str) -> str:
    """
    Turn live directives into instructions.

    ``#dev-copy=`` and ``#dev-run=`` lines become COPY and RUN instructions
    in place. A ``#dev-cmd-live=`` line replaces the final stage's CMD.
    """
    lines = []
    live_cmd = None
    for line in content.splitlines():
        match = LIVE_DIRECTIVE_RE.match(line)
        if match is None:
            lines.append(line)
        elif match.group(1) == "copy":
            lines.append(f"COPY {match.group(2).strip()}")
        elif match.group(1) == "run":
            lines.append(f"RUN {match.group(2).strip()}")
        else:
            live_cmd = match.group(2).strip()
    if live_cmd is not None:
        last_from = max(
            (i for i, line in enumerate(lines) if line.strip().upper().startswith("FROM ")),
            default=-1,
        )
        lines = [
            line
            for i, line in enumerate(lines)
            if i < last_from or not line.strip().upper().startswith("CMD ")
        ]
        lines.append(f"CMD {live_cmd}")
    return "\n".join(lines) + "\n"
