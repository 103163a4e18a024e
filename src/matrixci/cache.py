# cache.py
from __future__ import annotations

import hashlib
import io
import json
import re
import subprocess
import tarfile
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .model import JobInstance

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Build caches are keyed per (job name x key):
#   cache_key = hash(
#       job name + matrix binding,
#       step commands + cwd,
#       instance env,
#       tool versions (template.requires),
#       contents of declared input files/dirs (globs),
#   )
#
# Storage is an opaque key -> blob store (get/put). A blob is a tar.gz of
# the template's cache_dirs; a manifest.json sits next to it for
# explainability.
#
# Concurrent instances may read the same entry. Writers race with
# last-writer-wins (write to a unique temp file, then atomic replace);
# there is no lock, a bad entry only costs a slower future run.
# ---------------------------------------------------------------------


DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".matrixci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    manifest: Dict


def _sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(repo_root: Path, patterns: Iterable[str]) -> List[Path]:
    """
    Expand input patterns into concrete paths.
    Supports:
      - file path: "Cargo.toml"
      - dir path:  "src/"
      - glob:      "src/**", "tests/**/*.rs"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = repo_root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(repo_root.glob(pat)) if m.exists())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def _tool_version(tool: str) -> Optional[str]:
    """Best-effort version discovery. Keep it simple and stable."""
    for cmd in ([tool, "--version"], [tool, "-V"], [tool, "version"]):
        try:
            completed = subprocess.run(cmd, text=True, capture_output=True, check=False, timeout=10)
        except (OSError, subprocess.SubprocessError):
            continue
        text = (completed.stdout or "").strip() or (completed.stderr or "").strip()
        if completed.returncode == 0 and text:
            # Normalize whitespace to make hashing stable
            return " ".join(text.split())
    return None


def _hash_inputs(repo_root: Path, inputs: Iterable[str], *, excludes: List[str]) -> Tuple[str, Dict]:
    """
    Hash the declared input set: relative paths + contents + sizes.
    Files resolving outside the repo root are listed in the manifest only.
    """
    file_fps: List[Tuple[str, str, int]] = []
    outside: List[str] = []
    root = repo_root.resolve()

    for p in _resolve_globs(repo_root, inputs):
        files = [p] if p.is_file() else list(_iter_files_under(p))
        for f in files:
            # inputs (or symlinks) leaving the repo are not part of the key
            if not f.resolve().is_relative_to(root):
                outside.append(str(f))
                continue
            rel = _relpath(f, root)
            if _matches_any_glob(rel, excludes):
                continue
            file_fps.append((rel, _hash_file_contents(f), f.stat().st_size))

    file_fps.sort(key=lambda t: t[0])  # stable ordering by relpath
    payload = {"files": file_fps}
    return _sha256_str(_json_dumps_stable(payload)), dict(payload, outside_root=sorted(outside))


def _command_fingerprint(run) -> str:
    if isinstance(run, str):
        return run
    return f"callable:{getattr(run, '__module__', '?')}.{getattr(run, '__qualname__', repr(run))}"


def compute_cache_key(
    instance: JobInstance,
    *,
    repo_root: str | Path = ".",
    excludes: Optional[List[str]] = None,
) -> Tuple[str, Dict]:
    """
    Returns (cache_key, manifest) where manifest can be stored for explainability.
    """
    root = Path(repo_root).resolve()
    template = instance.template
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])

    steps = [
        {"name": s.name, "run": _command_fingerprint(s.run), "cwd": s.cwd or ".", "env": dict(s.env)}
        for s in instance.steps
    ]
    tool_versions = {t: _tool_version(t) for t in template.requires}
    inputs_hash, inputs_manifest = _hash_inputs(root, template.inputs, excludes=exclude_globs)

    payload = {
        "v": 1,  # bump this if you change hashing format
        "job": template.name,
        "binding": {k: str(v) for k, v in instance.binding.items()},
        "steps": steps,
        "env": dict(instance.env),
        "requires": list(template.requires),
        "tool_versions": tool_versions,
        "inputs_hash": inputs_hash,
    }

    key = _sha256_str(_json_dumps_stable(payload))
    manifest = {
        "key": key,
        "payload": payload,
        "inputs": inputs_manifest,
        "excludes": exclude_globs,
        "generated_at_unix": int(time.time()),
    }
    return key, manifest


def _safe_name(job_name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", job_name)


class CacheStore:
    """
    File-based key -> blob store:
      root/
        <job_name>/
          <key>.tar.gz
          <key>.manifest.json
    """

    def __init__(self, root: str | Path = ".matrixci/cache"):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _job_dir(self, job_name: str) -> Path:
        d = self.root / _safe_name(job_name)
        d.mkdir(parents=True, exist_ok=True)
        return d

    def artifact_path(self, job_name: str, key: str) -> Path:
        return self._job_dir(job_name) / f"{key}.tar.gz"

    def manifest_path(self, job_name: str, key: str) -> Path:
        return self._job_dir(job_name) / f"{key}.manifest.json"

    # ---- opaque blob interface ----

    def get(self, job_name: str, key: str) -> Optional[bytes]:
        art = self.artifact_path(job_name, key)
        try:
            return art.read_bytes()
        except FileNotFoundError:
            return None

    def put(self, job_name: str, key: str, blob: bytes) -> None:
        art = self.artifact_path(job_name, key)
        # unique temp per writer, then atomic rename: last writer wins
        tmp = art.with_name(f"{art.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp.write_bytes(blob)
            tmp.replace(art)
        finally:
            tmp.unlink(missing_ok=True)

    # ---- directory snapshots for a job instance ----

    def restore(self, instance: JobInstance, *, repo_root: str | Path = ".") -> CacheHit:
        """
        Restore cached dirs/files into the working directory ("overwrite by
        extraction"). Only restores template.cache_dirs.
        """
        template = instance.template
        if not template.cache_enabled:
            return CacheHit(hit=False, key="", reason="cache disabled for job", manifest={})
        if not template.cache_dirs:
            return CacheHit(hit=False, key="", reason="no cache_dirs specified", manifest={})

        root = Path(repo_root).resolve()
        key, manifest = compute_cache_key(instance, repo_root=root)

        blob = self.get(template.name, key)
        if blob is None:
            return CacheHit(hit=False, key=key, reason="cache miss", manifest=manifest)

        try:
            with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
                kwargs = {"filter": "data"} if hasattr(tarfile, "data_filter") else {}
                tar.extractall(path=str(root), **kwargs)
        except (tarfile.TarError, OSError) as e:
            return CacheHit(hit=False, key=key, reason=f"cache exists but restore failed: {e}", manifest=manifest)

        man = self.manifest_path(template.name, key)
        try:
            stored = json.loads(man.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            stored = {}

        return CacheHit(hit=True, key=key, reason="cache hit: restored artifact", manifest=stored or manifest)

    def save(
        self,
        instance: JobInstance,
        key: Optional[str] = None,
        manifest: Optional[Dict] = None,
        *,
        repo_root: str | Path = ".",
    ) -> Tuple[str, Dict]:
        """
        Snapshot template.cache_dirs into the blob for this key.
        Returns (key, manifest). Paths outside the repo root are skipped.
        """
        template = instance.template
        root = Path(repo_root).resolve()
        if key is None or manifest is None:
            key, manifest = compute_cache_key(instance, repo_root=root)
        if not template.cache_enabled or not template.cache_dirs:
            return key, manifest

        exclude_globs = list(manifest.get("excludes") or DEFAULT_CACHE_EXCLUDES)
        stored: List[str] = []
        skipped: List[str] = []

        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            for entry in template.cache_dirs:
                src = (root / Path(entry).expanduser()).resolve()
                if not src.exists() or not src.is_relative_to(root):
                    skipped.append(entry)
                    continue
                files = [src] if src.is_file() else list(_iter_files_under(src))
                for f in files:
                    if not f.resolve().is_relative_to(root):
                        skipped.append(str(f))
                        continue
                    rel = _relpath(f, root)
                    if _matches_any_glob(rel, exclude_globs):
                        continue
                    tar.add(str(f), arcname=rel, recursive=False)
                stored.append(entry)

        manifest = dict(manifest, stored=stored, skipped=skipped)
        self.put(template.name, key, buf.getvalue())
        self.manifest_path(template.name, key).write_text(
            json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False, default=str), encoding="utf-8"
        )
        return key, manifest

    def prune(self, job_name: str, keep: int = 3) -> None:
        """Keep only the newest N artifacts for a job (by mtime)."""
        d = self._job_dir(job_name)
        tars = sorted(d.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
        for p in tars[keep:]:
            key = p.name[: -len(".tar.gz")]
            p.unlink(missing_ok=True)
            (d / f"{key}.manifest.json").unlink(missing_ok=True)
