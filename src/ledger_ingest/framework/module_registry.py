"""
Module registry for dynamic detector discovery and instantiation.

Reads the list of active modules from ConfigLoader and dynamically imports
and instantiates the corresponding detector classes, so detectors are
switched on and off in config/sources.yaml without code changes.
"""

import importlib
import logging

from .base_detector import BaseDetector
from .config_loader import ConfigLoader

logger = logging.getLogger(__name__)


class ModuleRegistry:
    """
    Registry for dynamically loading and instantiating detectors.

    Maps module IDs to detector classes and caches the instances.
    """

    # Mapping of module ID to detector class path
    # This is the source of truth for available modules
    MODULE_MAPPING = {
        "MOD-001": "ledger_ingest.detectors.transaction_anomaly.TransactionAnomalyDetector",
        "MOD-002": "ledger_ingest.detectors.derivatives_anomaly.DerivativesAnomalyDetector",
    }

    def __init__(self, config_loader: ConfigLoader):
        """
        Initialize the registry.

        Args:
            config_loader: ConfigLoader instance (provides active module list)
        """
        self.config_loader = config_loader
        self._detectors: dict[str, BaseDetector] = {}

    def load_active_modules(self) -> dict[str, BaseDetector]:
        """
        Load and instantiate all active detectors, in configuration order.

        Returns:
            Dict mapping module_id to detector instance
                {
                    "MOD-001": TransactionAnomalyDetector(),
                    "MOD-002": DerivativesAnomalyDetector(),
                }

        Raises:
            KeyError: If an active module id is not in MODULE_MAPPING
            ImportError: If detector class cannot be imported
            TypeError: If detector class doesn't inherit from BaseDetector
        """
        return {module_id: self.get_detector(module_id) for module_id in self.list_active_modules()}

    def get_detector(self, module_id: str) -> BaseDetector:
        """
        Get a detector by module ID.

        Detectors are lazily loaded on first access.
        """
        if module_id not in self._detectors:
            self._detectors[module_id] = self._load_single_module(module_id)
        return self._detectors[module_id]

    def _load_single_module(self, module_id: str) -> BaseDetector:
        class_path = self.MODULE_MAPPING.get(module_id)
        if class_path is None:
            raise KeyError(f"Unknown detector module '{module_id}'")

        module_path, class_name = class_path.rsplit(".", 1)
        detector_cls = getattr(importlib.import_module(module_path), class_name)
        if not (isinstance(detector_cls, type) and issubclass(detector_cls, BaseDetector)):
            raise TypeError(f"{class_path} is not a BaseDetector subclass")

        logger.info("Loaded detector %s (%s)", module_id, class_name)
        return detector_cls()

    def list_active_modules(self) -> list[str]:
        return self.config_loader.get_active_modules()
