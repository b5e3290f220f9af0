"""
Filter graph resolution and ffmpeg argument assembly.

Everything here is pure: no filesystem or process access, so it can be
exercised with already-resolved paths.
"""
from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping, Sequence

from models.render_models import RenderJob

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}\s]+)\s*\}\}")

# Characters that continue a bare token; a resource name only matches when
# it is not glued to any of these on either side.
_TOKEN_BEFORE = r"(?<![\w.\-/\\])"
_TOKEN_AFTER = r"(?![\w.\-])"

MAX_LOGGED_COMMAND_CHARS = 4000


def escape_filter_path(path: str | Path) -> str:
    """Make a filesystem path safe inside a filter graph argument."""
    return str(path).replace("\\", "/").replace(":", "\\:")


def unescape_filter_path(value: str) -> str:
    return value.replace("\\:", ":")


def find_placeholders(template: str) -> list[str]:
    names: list[str] = []
    for match in PLACEHOLDER_PATTERN.finditer(template):
        name = match.group(1)
        if name not in names:
            names.append(name)
    return names


def unresolved_placeholders(template: str, names: Iterable[str]) -> list[str]:
    declared = set(names)
    return [name for name in find_placeholders(template) if name not in declared]


def _token_pattern(names: Iterable[str]) -> re.Pattern[str]:
    ordered = sorted(set(names), key=len, reverse=True)
    alternatives = "|".join(re.escape(name) for name in ordered)
    return re.compile(
        r"\{\{\s*(?P<braced>" + alternatives + r")\s*\}\}"
        r"|" + _TOKEN_BEFORE + r"(?P<bare>" + alternatives + r")" + _TOKEN_AFTER
    )


def resolve_filter_graph(template: str, resolved: Mapping[str, str | Path]) -> str:
    """
    Substitute resource tokens in a filter graph template.

    Both ``{{name}}`` and bare ``name`` occurrences are replaced with the
    escaped local path. Substitution is a single pass, so inserted paths are
    never matched again. Tokens with no entry in ``resolved`` are left as-is.
    """
    if not resolved:
        return template

    escaped = {name: escape_filter_path(path) for name, path in resolved.items()}
    pattern = _token_pattern(escaped)

    def _replace(match: re.Match[str]) -> str:
        name = match.group("braced") or match.group("bare")
        return escaped[name]

    return pattern.sub(_replace, template)


@dataclass
class EngineInput:
    locator: str
    options: list[str] = field(default_factory=list)

    def to_args(self) -> list[str]:
        return [*self.options, "-i", self.locator]


@dataclass
class FFmpegCommand:
    inputs: list[EngineInput]
    filter_complex: str
    output_options: list[str]
    output_file: str

    def to_args(self) -> list[str]:
        args: list[str] = []
        for engine_input in self.inputs:
            args.extend(engine_input.to_args())
        args.extend(["-filter_complex", self.filter_complex])
        args.extend(self.output_options)
        args.append(self.output_file)
        return args


def build_invocation(
    job: RenderJob,
    resolved_graph: str,
    output_path: Path,
    local_inputs: Mapping[int, Path] | None = None,
) -> list[str]:
    """
    Assemble the engine argument vector.

    Inputs keep their declared order because the engine binds ``[N:v]``
    labels by position. Tokens are emitted as-is with no extra quoting.
    """
    local_inputs = local_inputs or {}
    inputs = [
        EngineInput(
            locator=str(local_inputs[index]) if index in local_inputs else spec.locator,
            options=list(spec.engine_options),
        )
        for index, spec in enumerate(job.inputs)
    ]
    command = FFmpegCommand(
        inputs=inputs,
        filter_complex=resolved_graph,
        output_options=list(job.output_options),
        output_file=str(Path(output_path).absolute()),
    )
    return command.to_args()


def build_command(
    ffmpeg_bin: str,
    global_options: Sequence[str],
    argv: Sequence[str],
) -> list[str]:
    return [ffmpeg_bin, *global_options, *argv]


def format_command(cmd: Sequence[str]) -> str:
    text = shlex.join(cmd)
    if len(text) > MAX_LOGGED_COMMAND_CHARS:
        return f"{text[:MAX_LOGGED_COMMAND_CHARS]}... [truncated]"
    return text
