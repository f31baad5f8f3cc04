"""Loading of provider config and Kubernetes objects with validation.

Documents come either from the Infrastructure object (spec.providerConfig)
or from files handed to the CLI. Files are YAML; JSON is accepted as well
since it is a subset. All file reads enforce a size limit.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_DOCUMENT_FILE_SIZE_BYTES
from .models import InfrastructureConfig

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when a document cannot be loaded or fails validation."""

    pass


def format_validation_error(e: ValidationError) -> str:
    """Render pydantic errors as one "loc: msg" line each."""
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        errors.append(f"  - {loc}: {error['msg']}")
    return "\n".join(errors)


def load_document(path: Path) -> dict[str, Any]:
    """Read a YAML (or JSON) mapping from path.

    Raises:
        SpecLoadError: If the file is missing, too large, unreadable or not a mapping.
    """
    if not path.exists():
        raise SpecLoadError(f"File not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat file {path}: {e}") from e

    if file_size > MAX_DOCUMENT_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"File exceeds maximum size of {MAX_DOCUMENT_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read file {path}: {e}") from e

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise SpecLoadError(f"File must contain a YAML mapping: {path}")
    return data


def parse_provider_config(infrastructure: dict[str, Any]) -> InfrastructureConfig:
    """Extract and validate spec.providerConfig of an Infrastructure object.

    Raises:
        SpecLoadError: If providerConfig is missing or invalid.
    """
    metadata = infrastructure.get("metadata") or {}
    name = f"{metadata.get('namespace', '')}/{metadata.get('name', '')}"
    provider_config = (infrastructure.get("spec") or {}).get("providerConfig")
    if not isinstance(provider_config, dict):
        raise SpecLoadError(f"Infrastructure {name} has no providerConfig")

    try:
        return InfrastructureConfig.model_validate(provider_config)
    except ValidationError as e:
        raise SpecLoadError(
            f"Invalid providerConfig of Infrastructure {name}:\n{format_validation_error(e)}"
        ) from e


def load_infrastructure_config(path: Path) -> InfrastructureConfig:
    """Load an InfrastructureConfig from a file.

    Both a bare InfrastructureConfig and a whole Infrastructure object (with
    the config under spec.providerConfig) are accepted.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    data = load_document(path)
    if data.get("kind") == "Infrastructure":
        config = parse_provider_config(data)
    else:
        try:
            config = InfrastructureConfig.model_validate(data)
        except ValidationError as e:
            raise SpecLoadError(
                f"Validation failed for {path}:\n{format_validation_error(e)}"
            ) from e

    logger.info("Loaded infrastructure config from %s", path)
    return config
