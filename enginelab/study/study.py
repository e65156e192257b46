"""
Study - Loads and validates a benchmarking study.

A study lives in its own directory, next to the results it produces::

    studies/example/study.yaml   (or study.toml)
    studies/example/2cpu/servo.org.servo1/...
"""

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

import yaml

from enginelab.core.config import Settings
from enginelab.core.exceptions import StudyError
from enginelab.study.kinds import EngineKind
from enginelab.study.layout import SampleId, validate_key

logger = logging.getLogger(__name__)

STUDY_FILE_NAMES = ("study.yaml", "study.yml", "study.toml")
DEFAULT_BROWSER_OPEN_TIME = 10.0


@dataclass
class CpuConfig:
    """Named set of logical CPUs to isolate."""

    key: str
    cpus: List[int]


@dataclass
class Site:
    """A page to load, with optional per-site overrides."""

    key: str
    url: str
    open_time: Optional[float] = None
    user_agent: Optional[str] = None
    screen_size: Optional[Tuple[int, int]] = None
    wait_conditions: Dict[str, int] = field(default_factory=dict)
    extra_args_by_engine: Dict[str, List[str]] = field(default_factory=dict)

    def extra_args(self, engine_key: str) -> List[str]:
        return list(self.extra_args_by_engine.get(engine_key, []))


@dataclass
class Engine:
    """A browser build under test."""

    key: str
    kind: EngineKind
    path: str
    description: Optional[str] = None
    window_command: Optional[List[str]] = None  # run with the engine pid appended, once a window is visible
    window_class: Optional[str] = None  # X11 class used to find and close the window
    driver_path: Optional[str] = None  # chromedriver binary for ChromeDriverLike engines


@dataclass
class Study:
    """Complete study: the (cpu-config x site x engine) matrix and its settings."""

    sample_size: int
    cpu_configs: Dict[str, CpuConfig]
    sites: Dict[str, Site]
    engines: Dict[str, Engine]
    browser_open_time: float = DEFAULT_BROWSER_OPEN_TIME
    analyse_command: Optional[List[str]] = None
    report_command: Optional[List[str]] = None
    traceconv_command: Optional[List[str]] = None
    path: Optional[Path] = None

    @property
    def directory(self) -> Path:
        return self.path.parent if self.path else Path.cwd()

    @classmethod
    def load(cls, location: Path) -> "Study":
        """Load a study from a study directory or a study file."""
        location = Path(location)
        study_file = find_study_file(location) if location.is_dir() else location

        if not study_file.exists():
            raise StudyError(f"Study file not found: {study_file}")

        try:
            if study_file.suffix == ".toml":
                with open(study_file, "rb") as f:
                    data = tomllib.load(f)
            else:
                with open(study_file, "r") as f:
                    data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError, tomllib.TOMLDecodeError) as e:
            raise StudyError(f"Cannot parse {study_file}: {e}") from e

        study = cls.from_dict(data or {})
        study.path = study_file.resolve()

        logger.info(
            f"Loaded study {study_file}: {len(study.cpu_configs)} cpu configs, "
            f"{len(study.sites)} sites, {len(study.engines)} engines, sample size {study.sample_size}"
        )
        return study

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Study":
        """Build and validate a study from parsed configuration."""
        if not isinstance(data, Mapping):
            raise StudyError("Study must be a mapping")

        sample_size = data.get("sample_size")
        if isinstance(sample_size, bool) or not isinstance(sample_size, int) or sample_size < 2:
            raise StudyError(
                f"sample_size must be an integer >= 2 (needed for a sample standard deviation), got {sample_size!r}"
            )

        try:
            cpu_configs = _parse_cpu_configs(_section(data, "cpu_configs"))
            engines = _parse_engines(_section(data, "engines"))
            sites = _parse_sites(_section(data, "sites"), engines)
            open_time = _positive_float("browser_open_time", data.get("browser_open_time", DEFAULT_BROWSER_OPEN_TIME))
        except ValueError as e:
            raise StudyError(str(e)) from e

        return cls(
            sample_size=sample_size,
            cpu_configs=cpu_configs,
            sites=sites,
            engines=engines,
            browser_open_time=open_time,
            analyse_command=_command(data, "analyse_command"),
            report_command=_command(data, "report_command"),
            traceconv_command=_command(data, "traceconv_command"),
        )

    def samples(self, cpu_key: str) -> Iterator[Tuple[SampleId, Site, Engine]]:
        """Every (site, engine) sample of a cpu config, in study order."""
        if cpu_key not in self.cpu_configs:
            raise StudyError(f"Unknown cpu config {cpu_key!r}")
        for site in self.sites.values():
            for engine in self.engines.values():
                yield SampleId(cpu_key, site.key, engine.key), site, engine

    def all_samples(self) -> Iterator[Tuple[SampleId, Site, Engine]]:
        for cpu_key in self.cpu_configs:
            yield from self.samples(cpu_key)

    def open_time_for(self, site: Site, settings: Optional[Settings] = None) -> float:
        """Site open time, else the environment override, else the study default."""
        if site.open_time is not None:
            return site.open_time
        if settings is not None and settings.browser_open_time is not None:
            return settings.browser_open_time
        return self.browser_open_time


def find_study_file(study_dir: Path) -> Path:
    for name in STUDY_FILE_NAMES:
        candidate = study_dir / name
        if candidate.exists():
            return candidate
    raise StudyError(f"No study file ({', '.join(STUDY_FILE_NAMES)}) in {study_dir}")


# ============================================================================
# Parsing helpers
# ============================================================================


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = data.get(name)
    if not isinstance(section, Mapping) or not section:
        raise ValueError(f"{name} must be a non-empty mapping")
    return section


def _command(data: Mapping[str, Any], name: str) -> Optional[List[str]]:
    value = data.get(name)
    if value is None:
        return None
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not value or not all(isinstance(v, str) for v in value):
        raise StudyError(f"{name} must be a non-empty list of strings")
    return list(value)


def _positive_float(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ValueError(f"{name} must be a non-negative number of seconds, got {value!r}")
    return float(value)


def _parse_cpu_configs(section: Mapping[str, Any]) -> Dict[str, CpuConfig]:
    configs: Dict[str, CpuConfig] = {}
    for key, cpus in section.items():
        validate_key("cpu config", key)
        if not isinstance(cpus, list) or not cpus:
            raise ValueError(f"cpu_configs.{key} must be a non-empty list of CPU ids")
        if not all(isinstance(c, int) and not isinstance(c, bool) and c >= 0 for c in cpus):
            raise ValueError(f"cpu_configs.{key} must contain only non-negative integers")
        if len(set(cpus)) != len(cpus):
            raise ValueError(f"cpu_configs.{key} lists a CPU more than once")
        configs[key] = CpuConfig(key=key, cpus=list(cpus))
    return configs


def _parse_engines(section: Mapping[str, Any]) -> Dict[str, Engine]:
    engines: Dict[str, Engine] = {}
    for key, cfg in section.items():
        validate_key("engine", key, allow_dots=False)
        if not isinstance(cfg, Mapping):
            raise ValueError(f"engines.{key} must be a mapping with kind and path")

        kind_name = cfg.get("kind", cfg.get("type"))
        if not isinstance(kind_name, str):
            raise ValueError(f"engines.{key}.kind is required")
        path = cfg.get("path")
        if not isinstance(path, str) or not path:
            raise ValueError(f"engines.{key}.path is required")

        window_command = cfg.get("window_command")
        if window_command is not None and (
            not isinstance(window_command, list) or not all(isinstance(a, str) for a in window_command)
        ):
            raise ValueError(f"engines.{key}.window_command must be a list of strings")

        engines[key] = Engine(
            key=key,
            kind=EngineKind.parse(kind_name),
            path=path,
            description=cfg.get("description"),
            window_command=window_command,
            window_class=cfg.get("window_class"),
            driver_path=cfg.get("driver_path"),
        )
    return engines


def _parse_sites(section: Mapping[str, Any], engines: Mapping[str, Engine]) -> Dict[str, Site]:
    sites: Dict[str, Site] = {}
    for key, cfg in section.items():
        validate_key("site", key)

        if isinstance(cfg, str):
            sites[key] = Site(key=key, url=cfg)
            continue
        if not isinstance(cfg, Mapping) or not isinstance(cfg.get("url"), str):
            raise ValueError(f"sites.{key} must be a URL or a mapping with a url")

        open_time = cfg.get("open_time", cfg.get("browser_open_time"))
        if open_time is not None:
            open_time = _positive_float(f"sites.{key}.open_time", open_time)

        screen_size = cfg.get("screen_size")
        if screen_size is not None:
            if (
                not isinstance(screen_size, list)
                or len(screen_size) != 2
                or not all(isinstance(v, int) and v > 0 for v in screen_size)
            ):
                raise ValueError(f"sites.{key}.screen_size must be [width, height], got {screen_size!r}")
            screen_size = (screen_size[0], screen_size[1])

        wait_conditions = dict(cfg.get("wait_conditions", cfg.get("wait_for_selectors")) or {})
        for selector, count in wait_conditions.items():
            if isinstance(count, bool) or not isinstance(count, int) or count < 0:
                raise ValueError(f"sites.{key}.wait_conditions[{selector!r}] must be an element count")

        extra_args = dict(cfg.get("extra_args_by_engine", cfg.get("extra_engine_arguments")) or {})
        for engine_key, args in extra_args.items():
            if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
                raise ValueError(f"sites.{key}.extra_args_by_engine.{engine_key} must be a list of strings")
            if engine_key not in engines:
                logger.warning(f"sites.{key}: extra arguments for unknown engine {engine_key!r} are ignored")

        if wait_conditions and not any(e.kind.uses_webdriver for e in engines.values()):
            logger.warning(f"sites.{key}: wait_conditions only apply to WebDriver-controlled engines")

        sites[key] = Site(
            key=key,
            url=cfg["url"],
            open_time=open_time,
            user_agent=cfg.get("user_agent"),
            screen_size=screen_size,
            wait_conditions=wait_conditions,
            extra_args_by_engine={k: list(v) for k, v in extra_args.items()},
        )
    return sites
