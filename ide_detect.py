"""
IDE Detection
=============

Finds which agentic IDE shares the project by scanning for its marker folder.
The marker table is ordered: when several folders exist, the first entry wins.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Union
import logging

logger = logging.getLogger(__name__)

IDE_LOCK_NAME = "agent.lock"


@dataclass(frozen=True)
class IDEMarker:
    """How one IDE announces itself inside a project."""

    type: str
    folder: str
    status_file: Optional[str] = None
    feature_dirs: tuple[str, ...] = ()
    env_vars: tuple[str, ...] = ()


# Priority order matters; do not turn this into a dict.
IDE_MARKERS: tuple[IDEMarker, ...] = (
    IDEMarker(
        type="kiro",
        folder=".kiro",
        status_file="agent-status.json",
        feature_dirs=("steering", "specs", "hooks"),
        env_vars=("KIRO_SESSION", "KIRO_WORKSPACE"),
    ),
    IDEMarker(
        type="cursor",
        folder=".cursor",
        status_file=IDE_LOCK_NAME,
        env_vars=("CURSOR_SESSION",),
    ),
    IDEMarker(
        type="windsurf",
        folder=".windsurf",
        env_vars=("WINDSURF_SESSION",),
    ),
    IDEMarker(
        type="antigravity",
        folder=".antigravity",
        env_vars=("ANTIGRAVITY_SESSION", "AG_WORKSPACE"),
    ),
)

SUPPORTED_IDES = [marker.type for marker in IDE_MARKERS]


@dataclass
class IDEInfo:
    """Detected IDE.

    Fields:
        type: One of SUPPORTED_IDES
        configPath: Absolute path of the marker folder
        features: Feature sub-folders present (may be empty)
        version: IDE version when the marker folder records one
    """

    type: str
    configPath: str
    features: list[str] = field(default_factory=list)
    version: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"type": self.type, "configPath": self.configPath, "features": list(self.features)}
        if self.version:
            data["version"] = self.version
        return data


def get_marker(ide_type: str) -> Optional[IDEMarker]:
    return next((m for m in IDE_MARKERS if m.type == ide_type), None)


def lock_paths(project_root: Union[str, Path]) -> list[tuple[IDEMarker, Path]]:
    """Every IDE lock marker location, in priority order."""
    root = Path(project_root)
    return [(marker, root / marker.folder / IDE_LOCK_NAME) for marker in IDE_MARKERS]


def _detect_features(marker: IDEMarker, folder: Path) -> list[str]:
    return [name for name in marker.feature_dirs if (folder / name).exists()]


def _detect_version(folder: Path) -> Optional[str]:
    version_file = folder / "version"
    try:
        if version_file.is_file():
            return version_file.read_text().strip() or None
    except OSError as e:
        logger.debug(f"Could not read {version_file}: {e}")
    return None


def _env_active(marker: IDEMarker, environ: Mapping[str, str]) -> bool:
    return any(environ.get(name) for name in marker.env_vars)


def detect_ide(
    project_root: Union[str, Path], environ: Optional[Mapping[str, str]] = None
) -> Optional[IDEInfo]:
    """Detect which IDE is present in the project.

    Only marker folders count as evidence. When more than one folder exists
    and exactly one of those IDEs advertises a live session through its
    environment variables, that one is preferred; otherwise table order wins.

    Args:
        project_root: Project root directory
        environ: Environment to inspect (defaults to os.environ)

    Returns:
        IDEInfo for the detected IDE, or None
    """
    root = Path(project_root).absolute()
    environ = os.environ if environ is None else environ

    present = [m for m in IDE_MARKERS if (root / m.folder).is_dir()]
    if not present:
        logger.debug(f"No IDE marker folder found in {root}")
        return None

    chosen = present[0]
    if len(present) > 1:
        live = [m for m in present if _env_active(m, environ)]
        if len(live) == 1:
            chosen = live[0]

    folder = root / chosen.folder
    info = IDEInfo(
        type=chosen.type,
        configPath=str(folder),
        features=_detect_features(chosen, folder),
        version=_detect_version(folder),
    )
    logger.debug(f"Detected IDE {info.type} at {info.configPath}")
    return info
