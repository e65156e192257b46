"""
Sample Addressing

Pure mapping from (cpu-config, site, engine) keys to result directories, and
from (engine kind, run index) to per-run artifact names.

Layout::

    <study>/<cpu-key>/<site-key>.<engine-key>/
        trace01.html  trace01.pftrace  manifest01.json   (dual-trace engines)
        trace01.pftrace                                  (single-trace engines)
        done                                             (completion marker)

Keys must not contain path separators. Engine keys must not contain dots,
so ``<site-key>.<engine-key>`` never collides for distinct key pairs.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from enginelab.study.kinds import EngineKind

DONE_MARKER = "done"
TRACE_STEM = "trace"
MANIFEST_STEM = "manifest"

_FORBIDDEN_CHARS = ("/", "\\", "\0")


def validate_key(kind: str, key: str, allow_dots: bool = True) -> str:
    """Return ``key`` if it is usable as a path component, else raise ValueError."""
    if not isinstance(key, str) or not key:
        raise ValueError(f"{kind} key must be a non-empty string, got {key!r}")
    if key in (".", ".."):
        raise ValueError(f"{kind} key {key!r} is not allowed")
    for ch in _FORBIDDEN_CHARS:
        if ch in key:
            raise ValueError(f"{kind} key {key!r} must not contain {ch!r}")
    if not allow_dots and "." in key:
        raise ValueError(f"{kind} key {key!r} must not contain '.'")
    return key


@dataclass(frozen=True)
class SampleId:
    """One (cpu-config, site, engine) combination."""

    cpu_key: str
    site_key: str
    engine_key: str

    @property
    def dir_name(self) -> str:
        return f"{self.site_key}.{self.engine_key}"

    @property
    def name(self) -> str:
        return f"{self.cpu_key}/{self.dir_name}"

    def path(self, study_dir: Path) -> Path:
        return sample_dir(study_dir, self.cpu_key, self.site_key, self.engine_key)

    def __str__(self) -> str:
        return self.name


def sample_dir(study_dir: Path, cpu_key: str, site_key: str, engine_key: str) -> Path:
    """Result directory for a sample."""
    return Path(study_dir) / cpu_key / f"{site_key}.{engine_key}"


def done_marker(sample_path: Path) -> Path:
    return Path(sample_path) / DONE_MARKER


def index_width(sample_size: int) -> int:
    """Zero-padding width for run indices, e.g. 2 for sample_size 30."""
    return len(str(sample_size))


@dataclass(frozen=True)
class RunArtifactNames:
    """Relative file names one run leaves in its sample directory."""

    trace: str
    html: Optional[str] = None
    manifest: Optional[str] = None

    def all(self) -> List[str]:
        return [name for name in (self.html, self.trace, self.manifest) if name]


def artifact_names(kind: EngineKind, run_index: int, sample_size: int) -> RunArtifactNames:
    """Artifact names for run ``run_index`` (1-based) of an engine kind."""
    if not 1 <= run_index <= sample_size:
        raise ValueError(f"Run index {run_index} outside 1..{sample_size}")

    suffix = f"{run_index:0{index_width(sample_size)}d}"
    if kind.dual_trace:
        return RunArtifactNames(
            trace=f"{TRACE_STEM}{suffix}.pftrace",
            html=f"{TRACE_STEM}{suffix}.html",
            manifest=f"{MANIFEST_STEM}{suffix}.json",
        )
    return RunArtifactNames(trace=f"{TRACE_STEM}{suffix}.pftrace")
