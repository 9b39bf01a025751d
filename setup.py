"""
Setup file.
"""

import os
import re

from setuptools import find_packages, setup

URL = "https://github.com/cxbuild/cxbuild"
KEYWORDS = "c c++ cpp build-system package-manager compiler incremental lockfile"
HERE = os.path.dirname(os.path.abspath(__file__))


def get_version() -> str:
    with open(os.path.join(HERE, "src", "cxbuild", "__init__.py"), encoding="utf-8") as f:
        match = re.search(r'^__version__ = "([^"]+)"', f.read(), re.MULTILINE)
    if match is None:
        raise RuntimeError("Unable to find __version__")
    return match.group(1)


if __name__ == "__main__":
    setup(
        name="cxbuild",
        version=get_version(),
        description="C/C++ project manager and incremental build orchestrator",
        keywords=KEYWORDS,
        url=URL,
        python_requires=">=3.10",
        package_dir={"": "src"},
        packages=find_packages("src"),
        install_requires=[
            "requests>=2.31",
            "tqdm>=4.66",
            "psutil>=5.9",
        ],
        extras_require={
            "test": ["pytest>=7.0"],
        },
        entry_points={
            "console_scripts": [
                "cxbuild=cxbuild.cli:main",
            ],
        },
        include_package_data=True)
