"""
Ignore-file handling for build contexts.

Two rule sets decide which project files enter a build context:

* ``.dockerignore`` rules, read at the context root (or per service
  directory with multi-dockerignore), following the engine's matching
  rules: globs with ``**``, ``!`` negation, last matching pattern wins,
  and a pattern matching a directory also matches everything below it.
* ``.gitignore`` rules, read from any directory, scoped to that
  directory, following git's matching rules.

When both are active, a ``.dockerignore`` decision always wins over a
``.gitignore`` decision for the same path. Files below ``.balena/`` or
``.resin/`` metadata directories are never ignored.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from fleet_common.errors import ExpectedError

logger = logging.getLogger(__name__)

DEFAULT_DOCKERIGNORE_HEAD = ["**/.git"]
DEFAULT_DOCKERIGNORE_TAIL = [
    "!**/.balena",
    "!**/.resin",
    "!**/Dockerfile",
    "!**/Dockerfile.*",
    "!**/docker-compose.yml",
]

_METADATA_RE = re.compile(r"(^|/)\.(balena|resin)/")


def to_posix_path(path: str) -> str:
    return path.replace(os.sep, "/") if os.sep != "/" else path


def glob_to_regex(pattern: str) -> str:
    """
    Translate a dockerignore/gitignore glob into an anchored regex.

    ``**`` matches across directory separators, ``*`` and ``?`` do not,
    and ``[...]`` character classes pass through.
    """
    out = ["^"]
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if i + 1 < n and pattern[i + 1] == "*":
                i += 1
                if i + 1 < n and pattern[i + 1] == "/":
                    i += 1
                    out.append("(.*/)?")
                else:
                    out.append(".*")
            else:
                out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1 : end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = end
        elif c == "\\" and i + 1 < n:
            i += 1
            out.append(re.escape(pattern[i]))
        else:
            out.append(re.escape(c))
        i += 1
    out.append("$")
    return "".join(out)


def _parent_paths(path: str) -> list[str]:
    """Return ``a``, ``a/b`` for ``a/b/c``: every strict ancestor directory."""
    parts = path.split("/")
    return ["/".join(parts[:i]) for i in range(1, len(parts))]


@dataclass
class _Rule:
    regex: re.Pattern
    negated: bool
    dir_only: bool = False
    basename_only: bool = False


class DockerIgnore:
    """A set of dockerignore patterns evaluated in order."""

    def __init__(self, patterns: list[str] | None = None):
        self.rules: list[_Rule] = []
        if patterns:
            self.add(patterns)

    def add(self, patterns: list[str] | str) -> None:
        if isinstance(patterns, str):
            patterns = patterns.splitlines()
        for line in patterns:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            negated = line.startswith("!")
            if negated:
                line = line[1:].strip()
            line = str(PurePosixPath(line)).lstrip("/")
            if not line or line == ".":
                continue
            self.rules.append(_Rule(re.compile(glob_to_regex(line)), negated))

    def decision(self, rel_path: str) -> bool | None:
        """
        Return True (ignore), False (include) or None (no pattern matched).
        """
        rel_path = to_posix_path(rel_path)
        candidates = _parent_paths(rel_path) + [rel_path]
        result: bool | None = None
        for rule in self.rules:
            if any(rule.regex.match(candidate) for candidate in candidates):
                result = not rule.negated
        return result

    def ignores(self, rel_path: str) -> bool:
        return bool(self.decision(rel_path))


class GitIgnore:
    """Patterns from any number of ``.gitignore`` files, each scoped to its directory."""

    def __init__(self):
        # (base directory relative to the context, rules), shallowest first
        self.scopes: list[tuple[str, list[_Rule]]] = []

    def add(self, base_dir: str, content: str) -> None:
        rules = []
        for line in content.splitlines():
            line = line.rstrip()
            if not line or line.startswith("#"):
                continue
            negated = line.startswith("!")
            if negated:
                line = line[1:]
            elif line.startswith("\\"):
                line = line[1:]
            dir_only = line.endswith("/")
            line = line.rstrip("/")
            if not line:
                continue
            basename_only = "/" not in line
            line = line.lstrip("/")
            rules.append(
                _Rule(re.compile(glob_to_regex(line)), negated, dir_only, basename_only)
            )
        base_dir = "" if base_dir in ("", ".") else to_posix_path(base_dir).strip("/")
        self.scopes.append((base_dir, rules))
        self.scopes.sort(key=lambda scope: scope[0].count("/") + bool(scope[0]))

    def _match(self, path: str, is_dir: bool) -> bool | None:
        result: bool | None = None
        for base_dir, rules in self.scopes:
            if base_dir:
                if not path.startswith(base_dir + "/"):
                    continue
                local = path[len(base_dir) + 1 :]
            else:
                local = path
            name = local.rsplit("/", 1)[-1]
            for rule in rules:
                if rule.dir_only and not is_dir:
                    continue
                target = name if rule.basename_only else local
                if rule.regex.match(target):
                    result = not rule.negated
        return result

    def ignores(self, rel_path: str) -> bool:
        rel_path = to_posix_path(rel_path)
        # A file below an excluded directory cannot be re-included
        for parent in _parent_paths(rel_path):
            if self._match(parent, is_dir=True):
                return True
        return bool(self._match(rel_path, is_dir=False))


class FileIgnorer:
    """
    Combined dockerignore and gitignore filter for one build context.

    Paths are relative to the context directory.
    """

    def __init__(self, docker_ignore: DockerIgnore, git_ignore: GitIgnore | None = None):
        self.docker_ignore = docker_ignore
        self.git_ignore = git_ignore

    def ignores(self, rel_path: str) -> bool:
        rel_path = to_posix_path(rel_path)
        if _METADATA_RE.search(rel_path):
            return False
        decision = self.docker_ignore.decision(rel_path)
        if decision is not None:
            return decision
        if self.git_ignore is not None:
            return self.git_ignore.ignores(rel_path)
        return False


def read_dockerignore(directory: str | Path) -> str:
    """
    Read the ``.dockerignore`` file in ``directory``.

    Returns:
        File contents, or an empty string if there is no such file

    Raises:
        ExpectedError: If the file exists but cannot be read
    """
    path = Path(directory) / ".dockerignore"
    try:
        return path.read_text()
    except FileNotFoundError:
        return ""
    except OSError as e:
        raise ExpectedError(f'Error reading file "{path}": {e}') from e


def make_docker_ignore(directory: str | Path) -> DockerIgnore:
    """Build a DockerIgnore from the default patterns plus ``directory/.dockerignore``."""
    docker_ignore = DockerIgnore(DEFAULT_DOCKERIGNORE_HEAD)
    content = read_dockerignore(directory)
    if content:
        docker_ignore.add(content)
    docker_ignore.add(DEFAULT_DOCKERIGNORE_TAIL)
    return docker_ignore


def make_git_ignore(directory: str | Path) -> GitIgnore:
    """Collect every ``.gitignore`` below ``directory``."""
    directory = Path(directory)
    git_ignore = GitIgnore()
    for root, _dirs, files in os.walk(directory, followlinks=True):
        if ".gitignore" in files:
            rel_dir = os.path.relpath(root, directory)
            git_ignore.add(rel_dir, (Path(root) / ".gitignore").read_text())
    return git_ignore


def make_ignorer(directory: str | Path, use_gitignore: bool = True) -> FileIgnorer:
    """Build the combined filter for a context directory."""
    return FileIgnorer(
        make_docker_ignore(directory),
        make_git_ignore(directory) if use_gitignore else None,
    )


def ignorer_by_service(
    project_dir: str | Path,
    multi_dockerignore: bool,
    service_dirs: dict[str, str],
    use_gitignore: bool = True,
) -> dict[str, FileIgnorer]:
    """
    Build one filter per service.

    Without multi-dockerignore every service shares the project root's
    filter. Services sharing a directory share a filter instance.
    """
    project_dir = Path(project_dir).resolve()
    by_dir: dict[Path, FileIgnorer] = {}
    result = {}
    for service_name, service_dir in service_dirs.items():
        directory = (project_dir / service_dir).resolve() if multi_dockerignore else project_dir
        if directory not in by_dir:
            by_dir[directory] = make_ignorer(directory, use_gitignore)
        result[service_name] = by_dir[directory]
    return result


@dataclass
class FileStats:
    file_path: str  # absolute path on disk
    rel_path: str  # POSIX path relative to the project directory
    stat: os.stat_result


@dataclass
class FilteredFiles:
    files: list[FileStats] = field(default_factory=list)
    dockerignore_files: list[FileStats] = field(default_factory=list)


def list_files(project_dir: str | Path) -> list[str]:
    """List every non-directory entry below ``project_dir``, following directory symlinks."""
    result = []
    for root, _dirs, files in os.walk(project_dir, followlinks=True):
        for name in files:
            result.append(os.path.join(root, name))
    return sorted(result)


def filter_files(
    project_dir: str | Path,
    multi_dockerignore: bool = False,
    service_dirs: dict[str, str] | None = None,
    use_gitignore: bool = True,
) -> FilteredFiles:
    """
    List the regular files of ``project_dir`` that survive the ignore rules.

    With multi-dockerignore, a file inside a service directory is only
    checked against that service's filter (relative to the service
    directory); otherwise it is checked against the root filter.

    Args:
        project_dir: Project source directory
        multi_dockerignore: Use per-service .dockerignore files
        service_dirs: Service name to directory relative to the project root
        use_gitignore: Also apply .gitignore files

    Returns:
        FilteredFiles with surviving files and every .dockerignore found
    """
    project_dir = Path(project_dir).resolve()
    service_dirs = service_dirs or {}
    by_service = ignorer_by_service(project_dir, multi_dockerignore, service_dirs, use_gitignore)

    ignorer_by_dir: dict[str, FileIgnorer] = {}
    for service_name, service_dir in service_dirs.items():
        normalized = os.path.normpath(service_dir)
        key = "" if normalized == "." else to_posix_path(normalized).rstrip("/") + "/"
        ignorer_by_dir[key] = by_service[service_name]
    if "" not in ignorer_by_dir:
        ignorer_by_dir[""] = make_ignorer(project_dir, use_gitignore)
    service_prefixes = (
        sorted((d for d in ignorer_by_dir if d), key=len, reverse=True)
        if multi_dockerignore
        else []
    )

    result = FilteredFiles()
    for file_path in list_files(project_dir):
        rel_path = to_posix_path(os.path.relpath(file_path, project_dir))
        if PurePosixPath(rel_path).name == ".dockerignore":
            result.dockerignore_files.append(
                FileStats(file_path, rel_path, os.stat(file_path))
            )
        prefix = next((p for p in service_prefixes if rel_path.startswith(p)), None)
        if prefix is not None:
            if ignorer_by_dir[prefix].ignores(rel_path[len(prefix) :]):
                continue
        elif ignorer_by_dir[""].ignores(rel_path):
            continue
        stat = os.stat(file_path)
        if os.path.isfile(file_path):
            result.files.append(FileStats(file_path, rel_path, stat))
    return result


def unused_dockerignore_files(
    dockerignore_files: list[FileStats],
    multi_dockerignore: bool,
    service_dirs: dict[str, str],
) -> list[str]:
    """Return relative paths of .dockerignore files that will have no effect."""
    used = {".dockerignore"}
    if multi_dockerignore:
        for service_dir in service_dirs.values():
            normalized = to_posix_path(os.path.normpath(service_dir))
            used.add(".dockerignore" if normalized == "." else f"{normalized}/.dockerignore")
    return sorted(f.rel_path for f in dockerignore_files if f.rel_path not in used)
