import json
from pathlib import Path
from typing import Dict

import yaml

from l1_deployment.constants import ARTIFACTS_DIR
from l1_deployment.errors import ConfigurationError


def _load_yaml(filepath: Path) -> dict:
    """Loads a YAML file."""
    with open(filepath, "r") as file:
        return yaml.safe_load(file)


def _load_json(filepath: Path) -> dict:
    """Loads a JSON file."""
    with open(filepath, "r") as file:
        return json.load(file)


def get_artifact_filepath(config: Dict) -> Path:
    """Returns the filepath of the registry file written by the deployment."""
    artifact_config = config.get("artifacts", {})
    artifact_dir = Path(artifact_config.get("dir", ARTIFACTS_DIR))
    filename = artifact_config.get("filename")
    if not filename:
        raise ConfigurationError("artifact filename is not set in params file.")
    return artifact_dir / filename


def validate_config(config: Dict) -> Path:
    """Checks the required sections of a params file and returns the registry filepath."""
    if not isinstance(config, dict):
        raise ConfigurationError("Malformed params YAML.")

    deployment = config.get("deployment")
    if not deployment:
        raise ConfigurationError("deployment is not set in params file.")

    config_chain_id = deployment.get("chain_id")
    if not config_chain_id:
        raise ConfigurationError("chain_id is not set in params file.")
    try:
        int(config_chain_id)
    except (TypeError, ValueError):
        raise ConfigurationError(f"chain_id is not an integer: {config_chain_id!r}")

    constants = config.get("constants")
    if constants is not None and not isinstance(constants, dict):
        raise ConfigurationError("constants must be a mapping in params file.")

    return get_artifact_filepath(config=config)


def validate_chain_id(config_chain_id: int, connected_chain_id: int) -> None:
    if config_chain_id != connected_chain_id:
        raise ConfigurationError(
            f"chain_id in params file ({config_chain_id}) does not match "
            f"chain_id of current network ({connected_chain_id})."
        )
