"""
Scenario loading from JSON files.

Each file holds either one scenario object or a list of them.
"""
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import ValidationError

from distrisim.config import get_settings
from distrisim.exceptions import ScenarioError, ScenarioNotFoundError
from distrisim.timeline.models import Scenario

logger = logging.getLogger(__name__)


def parse_scenarios(data: Union[Dict, List], source: str = "<memory>") -> List[Scenario]:
    """
    Validate raw scenario data.

    Args:
        data: One scenario dict or a list of them
        source: Label used in error messages

    Returns:
        Validated scenarios

    Raises:
        ScenarioError: If the data does not describe valid scenarios
    """
    items = data if isinstance(data, list) else [data]
    scenarios = []
    for position, item in enumerate(items):
        try:
            scenarios.append(Scenario.model_validate(item))
        except ValidationError as e:
            details = [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]
            raise ScenarioError(
                f"Invalid scenario #{position} in {source}",
                source=source,
                details=details,
            ) from e
    return scenarios


def load_scenario_file(path: Union[str, Path]) -> List[Scenario]:
    """Load and validate every scenario stored in ``path``."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ScenarioError(f"Scenario file not found: {path}", source=str(path)) from e
    except json.JSONDecodeError as e:
        raise ScenarioError(f"Malformed JSON in {path}: {e}", source=str(path)) from e

    scenarios = parse_scenarios(data, source=str(path))
    logger.debug(f"Loaded {len(scenarios)} scenarios from {path.name}")
    return scenarios


def load_scenarios(
    directory: Optional[Union[str, Path]] = None,
    concept: Optional[str] = None,
) -> List[Scenario]:
    """
    Load all scenarios of a directory.

    Args:
        directory: Defaults to the configured scenario directory
        concept: Only keep scenarios of this protocol concept

    Returns:
        Scenarios sorted by file name, then by position in the file
    """
    directory = Path(directory) if directory else Path(get_settings().scenario_dir)
    if not directory.is_dir():
        raise ScenarioError(f"Scenario directory not found: {directory}", source=str(directory))

    scenarios: List[Scenario] = []
    for path in sorted(directory.glob("*.json")):
        scenarios.extend(load_scenario_file(path))

    if concept is not None:
        scenarios = [s for s in scenarios if s.concept == concept]
    return scenarios


def get_scenario(
    scenario_id: str,
    concept: Optional[str] = None,
    directory: Optional[Union[str, Path]] = None,
) -> Scenario:
    """
    Find one scenario by id.

    Raises:
        ScenarioNotFoundError: If no scenario matches
    """
    for scenario in load_scenarios(directory, concept):
        if scenario.id == scenario_id:
            return scenario
    raise ScenarioNotFoundError(scenario_id, concept)
