from __future__ import annotations

import json
import re
from typing import Dict, List, Optional

from hostbackup.core.host.runner import CommandResult, CommandRunner

# Docker renders sizes with go-units HumanSize: decimal (1000-based) units.
_SIZE_RE = re.compile(r"^\s*([0-9]+(?:\.[0-9]+)?)\s*([kKmMgGtTpP]?)(i?)[bB]?\s*$")
_DECIMAL = {"": 1, "k": 10**3, "m": 10**6, "g": 10**9, "t": 10**12, "p": 10**15}
_BINARY = {"": 1, "k": 2**10, "m": 2**20, "g": 2**30, "t": 2**40, "p": 2**50}


def parse_size(text: str) -> int:
    """'1.2GB' -> 1200000000, '512MiB' -> 536870912, '0B' -> 0."""
    s = (text or "").split("(")[0].strip()
    m = _SIZE_RE.match(s)
    if not m:
        raise ValueError(f"unrecognized size: {text!r}")
    num, unit, binary = m.group(1), m.group(2).lower(), m.group(3)
    table = _BINARY if binary else _DECIMAL
    return int(round(float(num) * table[unit]))


class DockerEngine:
    """Container-engine capability interface over the docker CLI."""

    def __init__(self, runner: CommandRunner, *, binary: str = "docker"):
        self.runner = runner
        self.binary = binary
        self._last: Optional[CommandResult] = None

    def _run(self, *args: str, timeout: Optional[float] = None) -> CommandResult:
        self._last = self.runner.run([self.binary, *args], timeout=timeout)
        return self._last

    def is_installed(self) -> bool:
        return self.runner.which(self.binary) is not None

    def version(self) -> str:
        res = self._run("--version", timeout=10)
        return res.stdout.strip() if res.ok else ""

    def info_text(self) -> CommandResult:
        return self._run("info")

    def running_container_names(self) -> Optional[List[str]]:
        """None when the daemon could not be queried."""
        res = self._run("ps", "--format", "{{.Names}}")
        if not res.ok:
            return None
        return [n.strip() for n in res.stdout.splitlines() if n.strip()]

    def last_error(self) -> str:
        return self._last.describe() if self._last is not None else ""

    def image_refs(self) -> Optional[List[str]]:
        """
        References to pass to `docker save`: every repo:tag, plus the bare id
        of images that have no tag at all. Saving by id alone drops the tags,
        so `docker load` would bring back only <none> images.
        """
        res = self._run("images", "--format", "{{.Repository}}:{{.Tag}} {{.ID}}")
        if not res.ok:
            return None
        tagged: List[str] = []
        tagged_ids = set()
        dangling: List[str] = []
        for line in res.stdout.splitlines():
            parts = line.strip().split()
            if len(parts) != 2:
                continue
            ref, image_id = parts
            if "<none>" in ref:
                if image_id not in dangling:
                    dangling.append(image_id)
                continue
            if ref not in tagged:
                tagged.append(ref)
            tagged_ids.add(image_id)
        return tagged + [i for i in dangling if i not in tagged_ids]

    def image_disk_usage_bytes(self) -> Optional[int]:
        """Size of local images according to `docker system df`; None when unavailable."""
        res = self._run("system", "df", "--format", "{{json .}}", timeout=60)
        if not res.ok:
            return None
        total = 0
        for line in res.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError:
                continue
            if str(row.get("Type") or "").lower() != "images":
                continue
            try:
                total += parse_size(str(row.get("Size") or "0B"))
            except ValueError:
                continue
        return total

    def listing(self, kind: str) -> CommandResult:
        """Human-readable listing: containers, images, networks, volumes."""
        if kind == "containers":
            return self._run("ps", "-a", "--format", "table {{.Names}}\t{{.Image}}\t{{.Status}}\t{{.Ports}}")
        if kind == "images":
            return self._run("images", "--format", "table {{.Repository}}\t{{.Tag}}\t{{.Size}}")
        if kind == "networks":
            return self._run("network", "ls")
        if kind == "volumes":
            return self._run("volume", "ls")
        raise ValueError(f"unknown listing: {kind}")

    def save_images(self, refs: List[str], out_path: str, *, timeout: Optional[float] = None) -> CommandResult:
        return self._run("save", "-o", out_path, *refs, timeout=timeout)

    def exec_to_file(self, container: str, argv: List[str], out_path: str, *, timeout: Optional[float] = None) -> CommandResult:
        return self.runner.run([self.binary, "exec", container, *argv], timeout=timeout, stdout_path=out_path)


def dump_command(engine: str, *, user: Optional[str] = None, password: Optional[str] = None) -> List[str]:
    if engine == "mysql":
        cmd = ["mysqldump"]
        if user:
            cmd += ["-u", user]
        if password:
            cmd.append(f"-p{password}")
        return cmd + ["--all-databases", "--single-transaction", "--routines", "--triggers"]
    if engine == "postgres":
        return ["pg_dumpall", "-U", "postgres"]
    raise ValueError(f"unsupported database engine: {engine}")


def match_engines(names: List[str], patterns: Dict[str, str]) -> List[tuple]:
    """[(container, engine)] for every running container whose name matches an engine pattern."""
    out = []
    compiled = {eng: re.compile(pat, re.IGNORECASE) for eng, pat in patterns.items()}
    for name in names:
        for eng, rx in compiled.items():
            if rx.search(name):
                out.append((name, eng))
    return out
