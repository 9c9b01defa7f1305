"""Loading PipelineConfig from the project's state directory.

Precedence: defaults < <project>/.adp/config.json < command-line flags.
"""

import json
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from .errors import ConfigurationError
from .models import PipelineConfig


CONFIG_FILE = "config.json"


def config_path_for(project_path: Path, state_dir: str = ".adp") -> Path:
    return Path(project_path) / state_dir / CONFIG_FILE


def load_config(
    project_path: Path,
    overrides: Optional[dict[str, Any]] = None,
) -> PipelineConfig:
    """Build the configuration for a project.

    Args:
        project_path: Repository root
        overrides: Values from command-line flags; ``None`` entries are ignored

    Raises:
        ConfigurationError: If the file is unreadable or any value is invalid
    """
    data: dict[str, Any] = {}
    path = config_path_for(project_path)
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Could not read {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a JSON object")

    if overrides:
        data.update({key: value for key, value in overrides.items() if value is not None})

    try:
        return PipelineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
