"""
Download manifest parsing and placeholder resolution.

A manifest has three top-level keys:

    {
      "vars": {"MODELS": "/workspace/ComfyUI/models"},
      "paths": {"LORAS": "{MODELS}/loras"},
      "sections": {
        "loras": [
          "https://host/a.safetensors",
          ["https://host/b.safetensors", "{LORAS}/b.safetensors"],
          {"url": "https://host/c.bin", "dir": "{LORAS}", "out": "c.bin"}
        ]
      }
    }

Entries are validated when the manifest is parsed; placeholders are resolved
later against the merged variable map, where the process environment wins.
"""

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import requests

from .config import env_flag
from .errors import ManifestError

PLACEHOLDER_RE = re.compile(r"\$?\{([A-Za-z_][A-Za-z0-9_]*)\}")
MAX_RESOLVE_PASSES = 50


class EntryKind(str, Enum):
    URL = "url"  # bare URL string
    PAIR = "pair"  # [url, path]
    OBJECT = "object"  # {url, path} or {url, dir, out}


@dataclass(frozen=True)
class ManifestEntry:
    url: str
    kind: EntryKind
    path: str | None = None  # Unresolved destination template, None for default

    @classmethod
    def parse(cls, raw: Any, section: str) -> "ManifestEntry":
        if isinstance(raw, str):
            url = raw.strip()
            if not url:
                raise ManifestError(f"Empty URL in section '{section}'")
            return cls(url=url, kind=EntryKind.URL)

        if isinstance(raw, list):
            if len(raw) != 2 or not all(isinstance(v, str) for v in raw):
                raise ManifestError(
                    f"Entry in section '{section}' must be [url, path], got {raw!r}"
                )
            url, path = raw[0].strip(), raw[1].strip()
            if not url:
                raise ManifestError(f"Empty URL in section '{section}'")
            return cls(url=url, kind=EntryKind.PAIR, path=path or None)

        if isinstance(raw, dict):
            url = raw.get("url")
            if not isinstance(url, str) or not url.strip():
                raise ManifestError(f"Entry in section '{section}' has no url: {raw!r}")
            path = raw.get("path")
            if not path and raw.get("dir"):
                out = raw.get("out") or url.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]
                path = f"{str(raw['dir']).rstrip('/')}/{out}"
            if path is not None and not isinstance(path, str):
                raise ManifestError(f"Entry path in section '{section}' must be a string")
            return cls(url=url.strip(), kind=EntryKind.OBJECT, path=path or None)

        raise ManifestError(
            f"Unsupported entry type in section '{section}': {type(raw).__name__}"
        )


def resolve_placeholders(template: str, variables: Mapping[str, str]) -> str:
    """
    Substitute ``{NAME}`` and ``${NAME}`` tokens until none remain.

    Raises:
        ManifestError: If a placeholder has no value or substitution does not
            converge
    """
    value = template
    for _ in range(MAX_RESOLVE_PASSES):
        missing = [m for m in PLACEHOLDER_RE.findall(value) if m not in variables]
        if missing:
            raise ManifestError(
                f"Unresolved placeholder(s) {', '.join(sorted(set(missing)))} in '{template}'"
            )
        resolved = PLACEHOLDER_RE.sub(lambda m: str(variables[m.group(1)]), value)
        if resolved == value:
            return resolved
        value = resolved
    raise ManifestError(f"Placeholder expansion does not converge for '{template}'")


@dataclass
class Manifest:
    vars: dict[str, str] = field(default_factory=dict)
    paths: dict[str, str] = field(default_factory=dict)
    sections: dict[str, list[ManifestEntry]] = field(default_factory=dict)

    @classmethod
    def parse(cls, data: Any) -> "Manifest":
        if not isinstance(data, dict):
            raise ManifestError("Manifest must be a JSON object")

        def _string_map(key: str) -> dict[str, str]:
            value = data.get(key) or {}
            if not isinstance(value, dict):
                raise ManifestError(f"'{key}' must be an object")
            return {str(k): str(v) for k, v in value.items()}

        raw_sections = data.get("sections") or {}
        if not isinstance(raw_sections, dict):
            raise ManifestError("'sections' must be an object")

        sections: dict[str, list[ManifestEntry]] = {}
        for name, entries in raw_sections.items():
            if not isinstance(entries, list):
                raise ManifestError(f"Section '{name}' must be a list")
            sections[name] = [ManifestEntry.parse(raw, name) for raw in entries]

        return cls(vars=_string_map("vars"), paths=_string_map("paths"), sections=sections)

    @classmethod
    def load(cls, source: str | Path, timeout: float = 30.0) -> "Manifest":
        """
        Load a manifest from an http(s) URL or a local file path.

        Raises:
            ManifestError: If the manifest cannot be fetched or decoded
        """
        source = str(source)
        try:
            if source.startswith(("http://", "https://")):
                response = requests.get(source, timeout=timeout)
                response.raise_for_status()
                data = response.json()
            else:
                data = json.loads(Path(source).read_text())
        except requests.exceptions.RequestException as e:
            raise ManifestError(f"Failed to fetch manifest {source}: {e}") from e
        except (OSError, ValueError) as e:
            raise ManifestError(f"Failed to read manifest {source}: {e}") from e
        return cls.parse(data)

    def variable_map(self, environ: Mapping[str, str]) -> dict[str, str]:
        """Merge vars, then paths, then upper-case environment variables."""
        merged: dict[str, str] = {}
        merged.update(self.vars)
        merged.update(self.paths)
        merged.update({k: v for k, v in environ.items() if k.isupper()})
        return merged

    def enabled_sections(self, environ: Mapping[str, str]) -> list[str]:
        """
        Sections switched on by ``<name>`` or ``download_<name>`` flags.

        Returned in declaration order; unknown flags are ignored.
        """
        enabled = []
        for name in self.sections:
            if env_flag(environ.get(name)) or env_flag(environ.get(f"download_{name}")):
                enabled.append(name)
        return enabled
