#orchestration_engine\parking\projects.py
"""Light project detection for parked directories."""

from enum import Enum
from pathlib import Path
from typing import List

SKIP_DIRECTORIES = frozenset({
    "node_modules",
    "vendor",
    ".git",
    ".idea",
    ".vscode",
    "__pycache__",
    ".cache",
    "target",
    "build",
    "dist",
})


class ProjectType(str, Enum):
    LARAVEL = "laravel"
    SYMFONY = "symfony"
    WORDPRESS = "wordpress"
    PHP = "php"
    NODE = "node"
    STATIC = "static"
    UNKNOWN = "unknown"


def detect_project_type(path: Path) -> ProjectType:
    # Most specific markers first
    if (path / "artisan").exists():
        return ProjectType.LARAVEL

    if (path / "bin" / "console").exists() or (path / "symfony.lock").exists():
        return ProjectType.SYMFONY

    if (path / "wp-config.php").exists() or (path / "wp-content").is_dir():
        return ProjectType.WORDPRESS

    if (path / "public" / "index.php").exists() or (path / "index.php").exists():
        return ProjectType.PHP

    if (path / "package.json").exists():
        return ProjectType.NODE

    if (path / "public" / "index.html").exists() or (path / "index.html").exists():
        return ProjectType.STATIC

    return ProjectType.UNKNOWN


def scan_directory(parent: Path) -> List[Path]:
    """Immediate, visible, non-tooling subdirectories sorted by name."""
    projects = []
    for entry in parent.iterdir():
        if not entry.is_dir():
            continue
        if entry.name.startswith(".") or entry.name in SKIP_DIRECTORIES:
            continue
        projects.append(entry)
    return sorted(projects, key=lambda p: p.name)
