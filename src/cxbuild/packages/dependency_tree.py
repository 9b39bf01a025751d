"""Structured dependency graph for display and export.

Each resolved dependency becomes a node (name, identity, revision); if its
checkout carries its own ``cxbuild.ini``, the dependencies it declares become
child nodes. Nested manifests are read but not fetched.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from cxbuild.config.manifest import (
    ComplexBuild,
    ConfigError,
    DependencySpec,
    GitHead,
    GitPinned,
    SystemPackage,
    ref_key,
    source_url,
)
from cxbuild.config.manifest_loader import MANIFEST_NAME, ManifestLoader
from cxbuild.packages.dependency_resolver import ResolvedDependency

MAX_DEPTH = 16


@dataclass
class DependencyNode:
    name: str
    url: str
    kind: str
    ref: str
    identity: Optional[str] = None
    rev: Optional[str] = None
    children: List["DependencyNode"] = field(default_factory=list)


def dependency_kind(spec: DependencySpec) -> str:
    if isinstance(spec, SystemPackage):
        return "system"
    if isinstance(spec, ComplexBuild):
        return "build"
    if isinstance(spec, GitPinned):
        return "pinned"
    if isinstance(spec, GitHead):
        return "head"
    raise TypeError(f"unknown dependency spec {spec!r}")


def _declared_children(source_dir: Optional[Path], seen: Set[str], depth: int) -> List[DependencyNode]:
    if source_dir is None or depth >= MAX_DEPTH:
        return []
    manifest_path = source_dir / MANIFEST_NAME
    if not manifest_path.exists():
        return []
    try:
        nested = ManifestLoader(manifest_path).load()
    except ConfigError as e:
        logging.warning(f"Skipping unreadable nested manifest {manifest_path}: {e}")
        return []

    children = []
    for name in nested.dependency_names():
        spec = nested.dependencies[name]
        url = source_url(spec)
        node = DependencyNode(name=name, url=url, kind=dependency_kind(spec), ref=ref_key(spec))
        if url not in seen:
            local = Path(url) if not isinstance(spec, SystemPackage) and Path(url).is_dir() else None
            node.children = _declared_children(local, seen | {url}, depth + 1)
        children.append(node)
    return children


def build_dependency_tree(resolved: Iterable[ResolvedDependency]) -> List[DependencyNode]:
    """Build the tree rooted at the project's direct dependencies."""
    nodes = []
    for dep in sorted(resolved, key=lambda d: d.name):
        url = source_url(dep.spec)
        node = DependencyNode(
            name=dep.name,
            url=url,
            kind=dependency_kind(dep.spec),
            ref=ref_key(dep.spec),
            identity=dep.identity.key if dep.identity else None,
            rev=dep.rev,
        )
        node.children = _declared_children(dep.source_dir, {url}, 1)
        nodes.append(node)
    return nodes


def tree_to_dict(nodes: Iterable[DependencyNode]) -> List[Dict[str, Any]]:
    return [
        {
            "name": node.name,
            "url": node.url,
            "kind": node.kind,
            "ref": node.ref,
            "identity": node.identity,
            "rev": node.rev,
            "dependents": tree_to_dict(node.children),
        }
        for node in nodes
    ]


def format_tree(root_name: str, nodes: List[DependencyNode]) -> str:
    """Render an ASCII tree::

        hello
        ├── fmt (pinned tag:10.2.1) a1b2c3d4e5f6
        └── zlib (system) 1.3
    """
    lines = [root_name]

    def walk(children: List[DependencyNode], prefix: str) -> None:
        for i, node in enumerate(children):
            last = i == len(children) - 1
            branch = "└── " if last else "├── "
            detail = node.kind if node.ref in ("HEAD", "system") else f"{node.kind} {node.ref}"
            rev = f" {node.rev[:12]}" if node.rev else ""
            lines.append(f"{prefix}{branch}{node.name} ({detail}){rev}")
            walk(node.children, prefix + ("    " if last else "│   "))

    walk(nodes, "")
    return "\n".join(lines)
