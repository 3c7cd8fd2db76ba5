"""
Configuration management for funnel analytics.

This module handles saving and loading funnel definitions and analysis
configurations as JSON, and the definition stores the engine reads funnels
from.
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from models import CohortDefinition, FunnelConfig, FunnelDefinition

from .exceptions import DefinitionError, FunnelNotFoundError


class FunnelConfigManager:
    """Manages saving and loading of funnel configurations"""

    @staticmethod
    def save_config(definition: FunnelDefinition, config: Optional[FunnelConfig] = None) -> str:
        """Save funnel definition and analysis configuration to JSON string"""
        config_data = {
            "funnel": definition.to_dict(),
            "config": (config or FunnelConfig(definition.conversion_window_hours)).to_dict(),
            "saved_at": datetime.now().isoformat(),
        }
        return json.dumps(config_data, indent=2)

    @staticmethod
    def load_config(config_json: str) -> tuple[FunnelDefinition, FunnelConfig]:
        """Load funnel definition and configuration from JSON string"""
        try:
            config_data = json.loads(config_json)
            definition = FunnelDefinition.from_dict(config_data["funnel"])
        except (KeyError, TypeError, ValueError) as e:
            raise DefinitionError(f"Invalid funnel configuration: {e}") from e

        config_dict = config_data.get("config")
        if config_dict:
            config = FunnelConfig.from_dict(config_dict)
        else:
            config = FunnelConfig(conversion_window_hours=definition.conversion_window_hours)
        return definition, config

    @staticmethod
    def save_cohort_definition(definition: CohortDefinition) -> str:
        return json.dumps(
            {"cohort": definition.to_dict(), "saved_at": datetime.now().isoformat()}, indent=2
        )

    @staticmethod
    def load_cohort_definition(config_json: str) -> CohortDefinition:
        try:
            data = json.loads(config_json)
            return CohortDefinition.from_dict(data.get("cohort", data))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise DefinitionError(f"Invalid cohort configuration: {e}") from e


class DefinitionStore:
    """Read access to funnel definitions, scoped by organization"""

    def get_funnel(self, organization_id: str, funnel_id: str) -> FunnelDefinition:
        raise NotImplementedError

    def list_funnels(self, organization_id: str) -> list[FunnelDefinition]:
        raise NotImplementedError


class InMemoryDefinitionStore(DefinitionStore):
    def __init__(self, definitions: Optional[list[FunnelDefinition]] = None):
        self._lock = threading.Lock()
        self._definitions: dict[tuple[str, str], FunnelDefinition] = {}
        for definition in definitions or []:
            self.add(definition)

    def add(self, definition: FunnelDefinition) -> None:
        with self._lock:
            self._definitions[(definition.organization_id, definition.id)] = definition

    def get_funnel(self, organization_id: str, funnel_id: str) -> FunnelDefinition:
        with self._lock:
            definition = self._definitions.get((organization_id, funnel_id))
        if definition is None:
            raise FunnelNotFoundError(organization_id, funnel_id)
        return definition

    def list_funnels(self, organization_id: str) -> list[FunnelDefinition]:
        with self._lock:
            return sorted(
                (d for (org, _), d in self._definitions.items() if org == organization_id),
                key=lambda d: d.id,
            )


class JsonDefinitionStore(InMemoryDefinitionStore):
    """
    Definitions loaded from a JSON file.

    The file holds either a list of funnel objects or ``{"funnels": [...]}``;
    each object uses the same camelCase keys ``FunnelDefinition.to_dict`` writes.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.logger = logging.getLogger(__name__)
        super().__init__(self._read())
        self.logger.info(f"Loaded {len(self._definitions)} funnel definitions from {self.path}")

    def _read(self) -> list[FunnelDefinition]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise DefinitionError(f"Cannot read funnel definitions from {self.path}: {e}") from e

        items = data.get("funnels", []) if isinstance(data, dict) else data
        if not isinstance(items, list):
            raise DefinitionError(f"{self.path}: expected a list of funnels")
        try:
            return [FunnelDefinition.from_dict(item) for item in items]
        except (KeyError, TypeError, ValueError) as e:
            raise DefinitionError(f"{self.path}: invalid funnel definition: {e}") from e

    def save(self) -> None:
        with self._lock:
            funnels = [d.to_dict() for d in self._definitions.values()]
        self.path.write_text(json.dumps({"funnels": funnels}, indent=2), encoding="utf-8")
