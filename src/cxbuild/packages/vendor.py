"""Copy resolved dependencies into the project for offline builds."""

import json
import logging
import shutil
from pathlib import Path
from typing import Iterable, List

from cxbuild.packages.cache import COMPLETE_MARKER
from cxbuild.packages.dependency_resolver import (
    VENDOR_DIR,
    VENDOR_RECORD,
    ResolvedDependency,
)

IGNORED = shutil.ignore_patterns(".git", COMPLETE_MARKER)


def vendor_dependencies(
    project_dir: Path,
    resolved: Iterable[ResolvedDependency],
    show_progress: bool = True,
) -> List[str]:
    """Copy each git dependency's checkout into ``vendor/<name>``.

    Version-control metadata is left behind. A ``.cxbuild-vendor.json``
    record of the URL and revision lets later builds use the copy in place
    of the shared cache. System packages are skipped.

    Returns:
        Names of the dependencies that were vendored
    """
    vendor_root = Path(project_dir) / VENDOR_DIR
    vendored: List[str] = []

    for dep in resolved:
        if dep.source_dir is None or dep.identity is None:
            continue

        dest = vendor_root / dep.name
        if dep.vendored and dep.source_dir.resolve() == dest.resolve():
            vendored.append(dep.name)
            continue

        staging = vendor_root / f".{dep.name}.tmp"
        if staging.exists():
            shutil.rmtree(staging)
        shutil.copytree(dep.source_dir, staging, ignore=IGNORED, symlinks=True)

        with open(staging / VENDOR_RECORD, "w", encoding="utf-8") as f:
            json.dump({"name": dep.name, "url": dep.url, "rev": dep.rev}, f, indent=2)

        if dest.exists():
            shutil.rmtree(dest)
        staging.rename(dest)

        if show_progress:
            print(f"Vendored {dep.name} @ {dep.rev[:12]} -> {dest.relative_to(project_dir)}")
        logging.info(f"Vendored {dep.name} from {dep.source_dir}")
        vendored.append(dep.name)

    return vendored
