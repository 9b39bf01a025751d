"""Static dependency alias registry.

Maps short package names (``fmt``, ``json``) to their source repositories.
The table is read-only; a ``registry.json`` file placed in the cache root can
add or override aliases without touching the package.
"""

import json
import logging
from pathlib import Path
from typing import Dict, Optional

DEFAULT_ALIASES: Dict[str, str] = {
    "catch2": "https://github.com/catchorg/Catch2",
    "doctest": "https://github.com/doctest/doctest",
    "fmt": "https://github.com/fmtlib/fmt",
    "glfw": "https://github.com/glfw/glfw",
    "glm": "https://github.com/g-truc/glm",
    "json": "https://github.com/nlohmann/json",
    "raylib": "https://github.com/raysan5/raylib",
    "sdl2": "https://github.com/libsdl-org/SDL",
    "spdlog": "https://github.com/gabime/spdlog",
    "stb": "https://github.com/nothings/stb",
}


class AliasRegistry:
    """Name to URL lookup over the built-in table plus an optional overlay."""

    def __init__(self, overlay_path: Optional[Path] = None):
        self._aliases = dict(DEFAULT_ALIASES)
        if overlay_path is not None and overlay_path.exists():
            try:
                with open(overlay_path, "r", encoding="utf-8") as f:
                    overlay = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logging.warning(f"Ignoring unreadable registry overlay {overlay_path}: {e}")
            else:
                if isinstance(overlay, dict):
                    self._aliases.update({str(k).lower(): str(v) for k, v in overlay.items()})

    def get(self, name: str) -> Optional[str]:
        return self._aliases.get(name.lower())

    def names(self):
        return sorted(self._aliases)

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._aliases
