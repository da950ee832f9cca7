"""
Catalog loader — loads module declarations from YAML.

The packaged catalog (``core/data/catalog.yml``) is always loaded; an
optional extra file is merged on top, its entries replacing packaged
ones by name.  Both files share one shape::

    modules:
      - name: neovim
        category: editors
        command: nvim
        recommends: [ripgrep, fd]
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from labrat.core.data import CATALOG_FILE
from labrat.core.errors import ConfigError
from labrat.core.models.module import CATEGORIES, ModuleSpec

logger = logging.getLogger(__name__)


def load_catalog_file(path: Path) -> dict[str, ModuleSpec]:
    """Load one catalog file.

    Raises:
        ConfigError: Unreadable file, invalid YAML, or an invalid entry.
    """
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read catalog {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in catalog {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict) or not isinstance(data.get("modules", []), list):
        raise ConfigError(f"Catalog {path} must be a mapping with a 'modules' list")

    specs: dict[str, ModuleSpec] = {}
    for index, raw in enumerate(data.get("modules") or []):
        try:
            spec = ModuleSpec.model_validate(raw)
        except ValidationError as e:
            raise ConfigError(f"Invalid module #{index} in {path}: {e}") from e
        if spec.name in specs:
            logger.warning("Catalog %s declares '%s' twice; keeping the last", path, spec.name)
        if spec.category not in CATEGORIES:
            logger.warning("Module '%s' has unknown category '%s'", spec.name, spec.category)
        specs[spec.name] = spec

    logger.debug("Loaded %d module(s) from %s", len(specs), path)
    return specs


def load_catalog(extra_path: Path | None = None, path: Path = CATALOG_FILE) -> dict[str, ModuleSpec]:
    """Load the packaged catalog, merge ``extra_path`` on top, and check references."""
    catalog = load_catalog_file(path)
    if extra_path is not None:
        if extra_path.is_file():
            overrides = load_catalog_file(extra_path)
            catalog.update(overrides)
            logger.info("Merged %d module(s) from %s", len(overrides), extra_path)
        else:
            logger.debug("Extra catalog not found: %s", extra_path)

    _warn_unknown_references(catalog)
    return catalog


def _warn_unknown_references(catalog: dict[str, ModuleSpec]) -> None:
    for spec in catalog.values():
        for field_name in ("requires", "recommends", "conflicts"):
            for ref in getattr(spec, field_name):
                if ref not in catalog:
                    logger.warning(
                        "Module '%s' %s unknown module '%s'", spec.name, field_name, ref,
                    )
