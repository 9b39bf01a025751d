"""Prebuilt binary shortcuts for well-known libraries.

Some libraries publish ready-made MSVC builds on their GitHub releases page.
When a source-built dependency is pinned to a release tag and the toolchain
is MSVC, the fetcher tries the release asset first and falls back to running
the build command if it isn't available.
"""

import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from cxbuild.packages.downloader import DownloadError, PackageDownloader
from cxbuild.packages.url_utils import parse_github_url


@dataclass(frozen=True)
class PrebuiltConfig:
    """Where things live inside a release archive. ``{version}`` is substituted."""

    asset_pattern: str
    lib_path: str
    include_path: str
    checksum: Optional[str] = None


DEFAULT_CATALOG: Dict[str, PrebuiltConfig] = {
    "glfw": PrebuiltConfig(
        asset_pattern="glfw-{version}.bin.WIN64.zip",
        lib_path="glfw-{version}.bin.WIN64/lib-static-ucrt/glfw3.lib",
        include_path="glfw-{version}.bin.WIN64/include",
    ),
    "sdl2": PrebuiltConfig(
        asset_pattern="SDL2-devel-{version}-VC.zip",
        lib_path="SDL2-{version}/lib/x64/SDL2.lib",
        include_path="SDL2-{version}/include",
    ),
}
DEFAULT_CATALOG["sdl"] = DEFAULT_CATALOG["sdl2"]


@dataclass
class PrebuiltResult:
    checksum: str
    lib: Path
    include_dir: Path


def release_version(tag: str) -> str:
    """Strip the usual tag prefixes: ``v3.4`` and ``release-2.30.0``."""
    version = tag
    for prefix in ("release-", "v"):
        if version.startswith(prefix):
            version = version[len(prefix):]
    return version


class PrebuiltCatalog:
    """Maps dependency names to release asset layouts."""

    def __init__(self, entries: Optional[Dict[str, PrebuiltConfig]] = None):
        self.entries = dict(DEFAULT_CATALOG if entries is None else entries)

    def lookup(self, name: str) -> Optional[PrebuiltConfig]:
        return self.entries.get(name.lower())

    def asset_url(self, name: str, url: str, tag: str) -> Optional[str]:
        config = self.lookup(name)
        repo = parse_github_url(url)
        if config is None or repo is None:
            return None
        owner, project = repo
        asset = config.asset_pattern.format(version=release_version(tag))
        return f"https://github.com/{owner}/{project}/releases/download/{tag}/{asset}"

    def try_fetch(
        self,
        name: str,
        url: str,
        tag: str,
        checkout_dir: Path,
        output_path: str,
        downloads_dir: Path,
        downloader: Optional[PackageDownloader] = None,
        show_progress: bool = True,
    ) -> Optional[PrebuiltResult]:
        """Download a release asset and lay it out like a source build would.

        The library lands at ``checkout_dir/output_path`` and the headers at
        ``checkout_dir/include``.

        Returns:
            PrebuiltResult, or None if no prebuilt is available
        """
        config = self.lookup(name)
        asset_url = self.asset_url(name, url, tag)
        if config is None or asset_url is None:
            return None

        downloader = downloader or PackageDownloader()
        version = release_version(tag)

        with tempfile.TemporaryDirectory(prefix="cxbuild-prebuilt-") as tmp:
            extract_dir = Path(tmp)
            try:
                checksum = downloader.download_and_extract(
                    asset_url, downloads_dir, extract_dir, config.checksum, show_progress
                )
            except DownloadError as e:
                logging.info(f"No prebuilt for {name} {tag}, building from source: {e}")
                return None

            lib_src = extract_dir / config.lib_path.format(version=version)
            include_src = extract_dir / config.include_path.format(version=version)
            if not lib_src.exists() or not include_src.is_dir():
                logging.warning(f"Prebuilt archive for {name} {tag} has an unexpected layout")
                return None

            lib_dest = checkout_dir / output_path
            lib_dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(lib_src, lib_dest)

            include_dest = checkout_dir / "include"
            shutil.copytree(include_src, include_dest, dirs_exist_ok=True)

        return PrebuiltResult(checksum=checksum, lib=lib_dest, include_dir=include_dest)
